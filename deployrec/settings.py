from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def split_csv(raw: str | None) -> tuple[str, ...]:
    if not raw:
        return ()
    return tuple(part.strip() for part in raw.split(",") if part.strip())


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("DEPLOYREC_DB_PATH", "deployrec.db")
    command_timeout_s: int = _env_int("DEPLOYREC_COMMAND_TIMEOUT_S", 1800)

    # Target
    host: str | None = os.getenv("DEPLOYREC_HOST")  # user@host; unset = local
    ssh_strict_host_key_checking: bool = _env_bool("DEPLOYREC_SSH_STRICT_HOST_KEY_CHECKING", False)
    project_dir: str | None = os.getenv("DEPLOYREC_PROJECT_DIR")
    repo_url: str | None = os.getenv("DEPLOYREC_REPO_URL")
    ref: str | None = os.getenv("DEPLOYREC_REF")
    preferred_branches: str = os.getenv("DEPLOYREC_PREFERRED_BRANCHES", "main,master")

    # Compose
    compose_file: str = os.getenv("DEPLOYREC_COMPOSE_FILE", "pwd.yml")
    compose_project: str | None = os.getenv("DEPLOYREC_COMPOSE_PROJECT")
    image_reference: str | None = os.getenv("DEPLOYREC_IMAGE")
    image_env_var: str = os.getenv("DEPLOYREC_IMAGE_ENV_VAR", "CUSTOM_IMAGE")
    tag_env_var: str = os.getenv("DEPLOYREC_TAG_ENV_VAR", "CUSTOM_TAG")
    ignore_services: str = os.getenv("DEPLOYREC_IGNORE_SERVICES", "")
    backup_dir: str | None = os.getenv("DEPLOYREC_BACKUP_DIR")

    # Provisioning
    provision: bool = _env_bool("DEPLOYREC_PROVISION", True)
    install_script_url: str = os.getenv("DEPLOYREC_INSTALL_SCRIPT_URL", "https://get.docker.com")

    # Health
    settle_interval_s: float = _env_float("DEPLOYREC_SETTLE_INTERVAL_S", 30.0)
    health_timeout_s: float = _env_float("DEPLOYREC_HEALTH_TIMEOUT_S", 120.0)
    health_initial_backoff_s: float = _env_float("DEPLOYREC_HEALTH_INITIAL_BACKOFF_S", 2.0)
    health_max_backoff_s: float = _env_float("DEPLOYREC_HEALTH_MAX_BACKOFF_S", 30.0)
    health_url: str | None = os.getenv("DEPLOYREC_HEALTH_URL")
    log_tail_lines: int = _env_int("DEPLOYREC_LOG_TAIL_LINES", 20)

    # Recovery
    auto_rollback: bool = _env_bool("DEPLOYREC_AUTO_ROLLBACK", False)

    # Reporting
    summary_path: str | None = os.getenv("GITHUB_STEP_SUMMARY")
    report_json: str | None = os.getenv("DEPLOYREC_REPORT_JSON")
    log_level: str = os.getenv("DEPLOYREC_LOG_LEVEL", "INFO")
    log_file: str | None = os.getenv("DEPLOYREC_LOG_FILE")

    # Email alerting (optional)
    enable_email: bool = _env_bool("DEPLOYREC_ENABLE_EMAIL", False)
    smtp_host: str = os.getenv("DEPLOYREC_SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = _env_int("DEPLOYREC_SMTP_PORT", 587)
    smtp_user: str | None = os.getenv("DEPLOYREC_SMTP_USER")
    smtp_password: str | None = os.getenv("DEPLOYREC_SMTP_PASSWORD")
    email_from: str | None = os.getenv("DEPLOYREC_EMAIL_FROM")
    email_to: str | None = os.getenv("DEPLOYREC_EMAIL_TO")

    # API
    api_user: str = os.getenv("DEPLOYREC_API_USER", "admin")
    api_password: str | None = os.getenv("DEPLOYREC_API_PASSWORD")

    @property
    def branches(self) -> tuple[str, ...]:
        return split_csv(self.preferred_branches)

    @property
    def ignored_services(self) -> frozenset[str]:
        return frozenset(split_csv(self.ignore_services))


settings = Settings()

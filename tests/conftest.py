import json
import os as _os
import sys
from typing import Callable

import pytest

# Ensure project root is importable (so `import main` / `import cli` work without installing)
_project_root = _os.path.dirname(_os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from deployrec import db  # noqa: E402
from deployrec.models import ContainerStats, DeploymentContext, DiskUsage, ObservedService  # noqa: E402
from deployrec.settings import Settings  # noqa: E402
from deployrec.shell import CommandResult, CommandRunner  # noqa: E402


PROJECT_DIR = "/srv/frappe"
REPO_URL = "https://github.com/example/frappe_docker.git"

COMPOSE_CONFIG = json.dumps(
    {
        "name": "frappe",
        "services": {
            "backend": {"image": "frappe/erpnext:v15"},
            "db": {"image": "mariadb:10.6"},
            "frontend": {"image": "frappe/erpnext:v15"},
        },
    }
)


class FakeRunner(CommandRunner):
    """Scripted runner. Commands succeed with empty output unless a rule matches.

    Rules match when their fragment is a substring of the space-joined command;
    the most recently added matching rule wins.
    """

    name = "fake"

    def __init__(self):
        super().__init__()
        self.calls: list[str] = []
        self.envs: list[dict] = []
        self.files: dict[str, str] = {}
        self._rules: list[tuple[str, Callable[[str], tuple[int, str, str]]]] = []

    def on(self, fragment: str, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        self._rules.append((fragment, lambda cmd: (returncode, stdout, stderr)))

    def on_call(self, fragment: str, fn: Callable[[str], tuple[int, str, str]]) -> None:
        self._rules.append((fragment, fn))

    def _execute(self, args, cwd, env, timeout, input):
        cmd = " ".join(args)
        self.calls.append(cmd)
        self.envs.append(env)
        for fragment, fn in reversed(self._rules):
            if fragment in cmd:
                rc, out, err = fn(cmd)
                return CommandResult(args, rc, out, err)
        return CommandResult(args, 0, "", "")

    def write_text(self, path: str, text: str) -> None:
        self.calls.append(f"write {path}")
        self.files[path] = text

    def ran(self, fragment: str) -> bool:
        return any(fragment in c for c in self.calls)

    def count(self, fragment: str) -> int:
        return sum(1 for c in self.calls if fragment in c)

    def index(self, fragment: str) -> int:
        for i, c in enumerate(self.calls):
            if fragment in c:
                return i
        raise AssertionError(f"{fragment!r} was never run; calls: {self.calls}")


class FakeRuntime:
    """Container runtime double. Each observe() returns the next snapshot; the last one repeats."""

    def __init__(self, snapshots=None, logs=None):
        self.snapshots = list(snapshots or [[]])
        self.logs = dict(logs or {})
        self.observe_calls = 0
        self.prune_calls = 0
        self.prune_error = None
        self.status_error = None

    def available(self) -> bool:
        return True

    def observe(self, project):
        idx = min(self.observe_calls, len(self.snapshots) - 1)
        self.observe_calls += 1
        return list(self.snapshots[idx])

    def log_tail(self, name, lines=20):
        return self.logs.get(name, "")

    def prune_dangling_images(self):
        self.prune_calls += 1
        if self.prune_error is not None:
            raise self.prune_error
        return 1024

    def stats(self, project):
        if self.status_error is not None:
            raise self.status_error
        snapshot = self.snapshots[min(max(self.observe_calls - 1, 0), len(self.snapshots) - 1)]
        return [ContainerStats(o.name, 1.5, 64 * 1024 * 1024, 1024 * 1024 * 1024) for o in snapshot if o.state == "running"]

    def disk_usage(self):
        if self.status_error is not None:
            raise self.status_error
        return DiskUsage(images_bytes=3 * 1024**3, containers_bytes=2048, volumes_bytes=512 * 1024**2)


def running(name, service=None, health="none"):
    return ObservedService(name=name, service=service or name, state="running", health=health)


def healthy_stack():
    return [
        running("frappe-backend-1", "backend", "healthy"),
        running("frappe-db-1", "db", "healthy"),
        running("frappe-frontend-1", "frontend"),
    ]


@pytest.fixture
def runner():
    r = FakeRunner()
    r.on("config --format json", stdout=COMPOSE_CONFIG)
    r.on("rev-parse HEAD", stdout="0123456789abcdef0123456789abcdef01234567\n")
    r.on("id -un", stdout="deploy\n")
    r.on("id -nG", stdout="deploy sudo docker\n")
    return r


@pytest.fixture
def runtime():
    return FakeRuntime([healthy_stack()])


@pytest.fixture
def ctx(runner, runtime):
    return DeploymentContext(
        project_dir=PROJECT_DIR,
        runner=runner,
        runtime=runtime,
        project_name="frappe",
        compose_file="pwd.yml",
    )


@pytest.fixture
def cfg(tmp_path, monkeypatch):
    """Isolated settings: temp sqlite db, no waits, single health poll, no CI outputs."""
    s = Settings(
        db_path=str(tmp_path / "deployrec.db"),
        project_dir=PROJECT_DIR,
        repo_url=REPO_URL,
        provision=False,
        settle_interval_s=0,
        health_timeout_s=0,
        health_url=None,
        auto_rollback=False,
        summary_path=None,
        report_json=None,
        enable_email=False,
        ignore_services="",
        backup_dir=None,
    )
    monkeypatch.setattr(db, "settings", s)
    return s

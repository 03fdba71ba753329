from __future__ import annotations

import logging
import posixpath
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from docker.errors import DockerException

from .docker_ops import Compose, image_env, parse_service_specs
from .errors import ConfigMissing, PullError, ReconcileError
from .models import DeploymentContext, ServiceSpec
from .shell import CommandFailed

logger = logging.getLogger(__name__)


@dataclass
class ReconcileOutcome:
    services: list[ServiceSpec] = field(default_factory=list)
    backup_path: str | None = None
    reclaimed_bytes: int = 0


class StackReconciler:
    """Replaces the running compose stack with the desired one.

    Steps run strictly in order and the first failure stops the rest; nothing
    is stopped or recreated unless the pull succeeded.
    """

    def __init__(
        self,
        ctx: DeploymentContext,
        image_reference: str | None = None,
        image_env_var: str = "CUSTOM_IMAGE",
        tag_env_var: str = "CUSTOM_TAG",
        settle_interval_s: float = 30.0,
        backup_dir: str | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.ctx = ctx
        self.compose = Compose(
            project=ctx.project_name,
            compose_file=ctx.compose_file,
            env=image_env(image_reference, image_env_var, tag_env_var),
        )
        self.settle_interval_s = max(0.0, float(settle_interval_s))
        self.backup_dir = backup_dir or ctx.project_dir
        self._sleep = sleep
        self.outcome = ReconcileOutcome()

    def _compose(self, *sub: str, stage: str, check: bool = True):
        try:
            return self.ctx.runner.run(
                self.compose.args(*sub),
                cwd=self.ctx.project_dir,
                env=self.compose.env,
                check=check,
            )
        except CommandFailed as e:
            err_cls = PullError if stage == "pull" else ReconcileError
            raise err_cls(str(e), exit_code=e.returncode, stage=stage) from e

    def reconcile(self) -> ReconcileOutcome:
        outcome = self.outcome = ReconcileOutcome()
        self._check_compose_file()
        outcome.services = self.load_service_specs()
        outcome.backup_path = self.snapshot()

        logger.info("Pulling images for %s...", self.compose.project)
        self._compose("pull", stage="pull")

        logger.info("Stopping existing containers...")
        self._compose("down", "--remove-orphans", stage="down")

        logger.info("Recreating and starting containers...")
        self._compose("up", "--build", "--force-recreate", "-d", stage="up")

        if self.settle_interval_s:
            logger.info("Waiting %.0fs for containers to settle...", self.settle_interval_s)
            self._sleep(self.settle_interval_s)

        outcome.reclaimed_bytes = self.prune_images()
        return outcome

    def _check_compose_file(self) -> None:
        path = posixpath.join(self.ctx.project_dir, self.ctx.compose_file)
        if self.ctx.runner.exists(path, "f"):
            return
        listing = self.ctx.runner.run(["ls", "-la", self.ctx.project_dir], check=False).stdout
        raise ConfigMissing(path, listing)

    def load_service_specs(self) -> list[ServiceSpec]:
        out = self._compose("config", "--format", "json", stage="config").stdout
        try:
            return parse_service_specs(out)
        except ValueError as e:
            raise ReconcileError(f"Unreadable compose config: {e}", stage="config") from e

    def snapshot(self) -> str | None:
        """Dump current container state to a backup file. Best effort."""
        try:
            ids = self._compose("ps", "-q", stage="snapshot").stdout.strip()
            if not ids:
                return None
            state = self._compose("ps", "--format", "json", stage="snapshot").stdout
            path = posixpath.join(self.backup_dir, f"backup-{datetime.now().strftime('%Y%m%d-%H%M%S')}.json")
            self.ctx.runner.write_text(path, state)
        except (ReconcileError, CommandFailed, OSError) as e:
            logger.warning("Skipping state backup: %s", e)
            return None
        logger.info("Saved current state to %s", path)
        return path

    def prune_images(self) -> int:
        try:
            reclaimed = self.ctx.runtime.prune_dangling_images()
        except DockerException as e:
            logger.warning("Image prune failed: %s", e)
            return 0
        logger.info("Pruned dangling images (%d bytes reclaimed)", reclaimed)
        return reclaimed

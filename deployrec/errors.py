"""Deployment error taxonomy.

Every stage raises a subclass of :class:`DeployError`. The pipeline stops at
the first one and turns it into a failed ``DeploymentResult``; ``stage`` and
``exit_code`` end up in the report and the process exit status.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
    from .models import ObservedService


class DeployError(Exception):
    stage = "deploy"

    def __init__(self, message: str, exit_code: int | None = None, stage: str | None = None):
        super().__init__(message)
        if stage:
            self.stage = stage
        # A failed command with exit status 0 is impossible; treat missing/zero as 1.
        self.exit_code = exit_code if exit_code else 1

    @property
    def failing_services(self) -> tuple["ObservedService", ...]:
        return ()


class ProvisionError(DeployError):
    stage = "provision"


class SyncError(DeployError):
    stage = "sync"


class ReconcileError(DeployError):
    stage = "reconcile"


class ConfigMissing(ReconcileError):
    stage = "config"

    def __init__(self, path: str, listing: str = ""):
        super().__init__(f"Compose file not found: {path}")
        self.path = path
        self.listing = listing


class PullError(ReconcileError):
    stage = "pull"


class HealthError(DeployError):
    stage = "verify"

    def __init__(self, message: str, services: Sequence["ObservedService"] = ()):
        super().__init__(message)
        self.services = tuple(services)

    @property
    def failing_services(self) -> tuple["ObservedService", ...]:
        return self.services


class UnhealthyServices(HealthError):
    def __init__(self, services: Sequence["ObservedService"]):
        self.names = [s.name for s in services]
        super().__init__(f"Unhealthy containers detected: {', '.join(self.names)}", services)


class IncompleteRollout(HealthError):
    def __init__(self, expected: int, actual: int, services: Sequence["ObservedService"] = ()):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Not all services are running. Expected: {expected}, Running: {actual}",
            services,
        )


class EndpointUnhealthy(HealthError):
    def __init__(self, url: str, detail: str):
        self.url = url
        self.detail = detail
        super().__init__(f"Health endpoint {url} failed: {detail}")


class ManifestError(DeployError):
    stage = "manifest"

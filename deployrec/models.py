from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .docker_ops import ContainerRuntime
    from .shell import CommandRunner


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class ToolName(str, Enum):
    DOCKER = "docker"
    COMPOSE = "compose"


RUNNING = "running"
EXITED = "exited"
RESTARTING = "restarting"
UNKNOWN = "unknown"

HEALTHY = "healthy"
UNHEALTHY = "unhealthy"
STARTING = "starting"
NO_HEALTH = "none"


@dataclass
class HostState:
    tools_installed: set[ToolName] = field(default_factory=set)
    project_dir_exists: bool = False
    is_git_repo: bool = False


@dataclass(frozen=True)
class DesiredRevision:
    repo_url: str
    ref: str | None = None
    image_reference: str | None = None


@dataclass(frozen=True)
class ServiceSpec:
    name: str
    image_reference: str | None = None
    expected_replica_count: int = 1


@dataclass(frozen=True)
class ObservedService:
    name: str  # container name
    service: str  # compose service
    state: str = UNKNOWN  # running|exited|restarting|unknown
    health: str = NO_HEALTH  # healthy|unhealthy|starting|none
    log_tail: str = ""


@dataclass(frozen=True)
class ContainerStats:
    name: str
    cpu_percent: float = 0.0
    memory_bytes: int = 0
    memory_limit_bytes: int = 0

    @property
    def memory_percent(self) -> float:
        if not self.memory_limit_bytes:
            return 0.0
        return round(self.memory_bytes / self.memory_limit_bytes * 100.0, 2)


@dataclass(frozen=True)
class DiskUsage:
    images_bytes: int = 0
    containers_bytes: int = 0
    volumes_bytes: int = 0
    build_cache_bytes: int = 0

    @property
    def total_bytes(self) -> int:
        return self.images_bytes + self.containers_bytes + self.volumes_bytes + self.build_cache_bytes


@dataclass(frozen=True)
class StackStatus:
    """Point-in-time view of the stack after bring-up: containers, resource use, disk."""

    containers: tuple[ObservedService, ...] = ()
    stats: tuple[ContainerStats, ...] = ()
    disk: DiskUsage | None = None


@dataclass(frozen=True)
class DeploymentContext:
    """Everything a stage needs to act on one deployment target.

    ``host_ref`` is ``None`` for the local machine, ``user@host`` otherwise.
    """

    project_dir: str
    runner: "CommandRunner"
    runtime: "ContainerRuntime"
    project_name: str
    compose_file: str = "pwd.yml"
    host_ref: str | None = None

    @property
    def target(self) -> str:
        return f"{self.host_ref or 'localhost'}:{self.project_dir}"


@dataclass(frozen=True)
class DeploymentResult:
    succeeded: bool
    failing_services: tuple[ObservedService, ...] = ()
    timestamp: str = field(default_factory=utc_now)
    stage: str | None = None
    error: str | None = None
    exit_code: int = 0
    project: str | None = None
    host: str | None = None
    ref: str | None = None
    revision: str | None = None
    image_reference: str | None = None
    rolled_back_to: str | None = None
    backup_path: str | None = None
    duration_s: float = 0.0
    status: StackStatus | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any

import docker
from docker.errors import DockerException, NotFound

from .models import (
    EXITED,
    HEALTHY,
    NO_HEALTH,
    RESTARTING,
    RUNNING,
    STARTING,
    UNHEALTHY,
    UNKNOWN,
    ContainerStats,
    DiskUsage,
    ObservedService,
    ServiceSpec,
)

logger = logging.getLogger(__name__)

PROJECT_LABEL = "com.docker.compose.project"
SERVICE_LABEL = "com.docker.compose.service"

PROJECT_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9_\-]{0,62}$")

# docker status -> observed state
_STATES = {
    "running": RUNNING,
    "restarting": RESTARTING,
    "exited": EXITED,
    "dead": EXITED,
}
_HEALTH = {
    "healthy": HEALTHY,
    "unhealthy": UNHEALTHY,
    "starting": STARTING,
}


def validate_project_name(name: str) -> None:
    if not PROJECT_NAME_RE.match(name):
        raise ValueError(
            "Invalid compose project name. Use lowercase letters/numbers, '-' and '_', "
            "starting with a letter or number (max 63 chars)."
        )


def project_name_for(project_dir: str, explicit: str | None = None) -> str:
    """Compose project name: explicit value, else derived from the directory name
    the same way ``docker compose`` does (lowercased, invalid characters dropped)."""
    if explicit:
        validate_project_name(explicit)
        return explicit
    base = os.path.basename(os.path.normpath(project_dir)).lower()
    name = re.sub(r"[^a-z0-9_\-]", "", base).lstrip("-_")
    validate_project_name(name)
    return name


def split_image_reference(ref: str) -> tuple[str, str]:
    """``repo/name:tag`` -> (``repo/name``, ``tag``). Missing tag means ``latest``."""
    last = ref.rsplit("/", 1)[-1]
    if ":" in last:
        name, tag = ref.rsplit(":", 1)
        return name, tag
    return ref, "latest"


def image_env(image_reference: str | None, image_var: str, tag_var: str) -> dict[str, str]:
    if not image_reference:
        return {}
    name, tag = split_image_reference(image_reference)
    return {image_var: name, tag_var: tag}


def parse_service_specs(config_json: str) -> list[ServiceSpec]:
    """Build ServiceSpecs from ``docker compose config --format json`` output."""
    data = json.loads(config_json)
    if not isinstance(data, dict):
        raise ValueError("compose config is not a JSON object")
    services = data.get("services") or {}
    if not isinstance(services, dict):
        raise ValueError("compose config has no 'services' mapping")
    specs: list[ServiceSpec] = []
    for name in sorted(services):
        svc = services[name] or {}
        replicas = (svc.get("deploy") or {}).get("replicas")
        if replicas is None:
            replicas = svc.get("scale", 1)
        specs.append(ServiceSpec(name=name, image_reference=svc.get("image"), expected_replica_count=int(replicas)))
    return specs


def cpu_percent(raw: dict[str, Any]) -> float:
    """CPU share from a one-shot ``docker stats`` sample, the way the docker CLI computes it."""
    cpu = raw.get("cpu_stats") or {}
    pre = raw.get("precpu_stats") or {}
    cpu_delta = (cpu.get("cpu_usage") or {}).get("total_usage", 0) - (pre.get("cpu_usage") or {}).get("total_usage", 0)
    system_delta = cpu.get("system_cpu_usage", 0) - pre.get("system_cpu_usage", 0)
    if cpu_delta <= 0 or system_delta <= 0:
        return 0.0
    online = cpu.get("online_cpus") or len((cpu.get("cpu_usage") or {}).get("percpu_usage") or []) or 1
    return round(cpu_delta / system_delta * online * 100.0, 2)


def memory_usage(raw: dict[str, Any]) -> tuple[int, int]:
    """(used, limit) in bytes; page cache is not counted as used."""
    mem = raw.get("memory_stats") or {}
    stats = mem.get("stats") or {}
    cache = stats.get("inactive_file", stats.get("cache", 0))
    used = max(0, int(mem.get("usage", 0)) - int(cache))
    return used, int(mem.get("limit", 0))


def disk_usage_from_df(df: dict[str, Any]) -> DiskUsage:
    """Summarise ``docker system df`` (``client.df()``) output."""
    volumes = 0
    for v in df.get("Volumes") or []:
        size = (v.get("UsageData") or {}).get("Size", 0)
        volumes += max(0, int(size))
    return DiskUsage(
        images_bytes=int(df.get("LayersSize") or 0),
        containers_bytes=sum(int(c.get("SizeRw") or 0) for c in df.get("Containers") or []),
        volumes_bytes=volumes,
        build_cache_bytes=sum(int(b.get("Size") or 0) for b in df.get("BuildCache") or []),
    )


@dataclass(frozen=True)
class Compose:
    """Argument vectors for ``docker compose`` scoped to one project."""

    project: str
    compose_file: str
    env: dict[str, str] = field(default_factory=dict)

    def args(self, *sub: str) -> list[str]:
        return ["docker", "compose", "-p", self.project, "-f", self.compose_file, *sub]


class ContainerRuntime:
    """Read-side access to the container runtime through the docker SDK.

    Containers are matched on the labels docker compose puts on them, so the
    runtime never needs compose itself.
    """

    def __init__(self, host: str | None = None):
        self.host = host

    def _client(self) -> docker.DockerClient:
        if self.host:
            return docker.DockerClient(base_url=f"ssh://{self.host}", use_ssh_client=True)
        return docker.from_env()

    def available(self) -> bool:
        try:
            self._client().ping()
            return True
        except DockerException:
            return False

    def observe(self, project: str) -> list[ObservedService]:
        c = self._client()
        containers = c.containers.list(all=True, filters={"label": [f"{PROJECT_LABEL}={project}"]})
        return sorted((self._to_observed(x) for x in containers), key=lambda o: o.name)

    @staticmethod
    def _to_observed(container: Any) -> ObservedService:
        state = container.attrs.get("State") or {}
        health = (state.get("Health") or {}).get("Status")
        return ObservedService(
            name=container.name,
            service=(container.labels or {}).get(SERVICE_LABEL, container.name),
            state=_STATES.get(container.status, UNKNOWN),
            health=_HEALTH.get(health, NO_HEALTH),
        )

    def log_tail(self, container_name: str, lines: int = 20) -> str:
        try:
            raw = self._client().containers.get(container_name).logs(tail=lines)
        except NotFound:
            return ""
        return raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else str(raw)

    def prune_dangling_images(self) -> int:
        """Remove dangling images; returns bytes reclaimed."""
        out = self._client().images.prune(filters={"dangling": True})
        return int((out or {}).get("SpaceReclaimed") or 0)

    def stats(self, project: str) -> list[ContainerStats]:
        """One stats sample per running container of ``project`` (``docker stats --no-stream``)."""
        c = self._client()
        containers = c.containers.list(filters={"label": [f"{PROJECT_LABEL}={project}"], "status": "running"})
        out = []
        for container in sorted(containers, key=lambda x: x.name):
            raw = container.stats(stream=False)
            used, limit = memory_usage(raw)
            out.append(ContainerStats(container.name, cpu_percent(raw), used, limit))
        return out

    def disk_usage(self) -> DiskUsage:
        return disk_usage_from_df(self._client().df())

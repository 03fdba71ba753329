"""Post-deployment stack status: containers, per-container CPU / memory, disk usage."""

from __future__ import annotations

import logging
from typing import Sequence

from docker.errors import DockerException

from .models import DeploymentContext, ObservedService, StackStatus

logger = logging.getLogger(__name__)


def human_bytes(n: int) -> str:
    size = float(n)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if abs(size) < 1024.0:
            return f"{size:.1f}{unit}" if unit != "B" else f"{int(size)}B"
        size /= 1024.0
    return f"{size:.1f}TiB"


def collect_status(ctx: DeploymentContext, observed: Sequence[ObservedService] | None = None) -> StackStatus | None:
    """Best effort; returns None when the runtime cannot be queried."""
    try:
        containers = tuple(observed) if observed is not None else tuple(ctx.runtime.observe(ctx.project_name))
        stats = tuple(ctx.runtime.stats(ctx.project_name))
        disk = ctx.runtime.disk_usage()
    except DockerException as e:
        logger.warning("Could not collect stack status: %s", e)
        return None
    return StackStatus(containers=containers, stats=stats, disk=disk)


def status_lines(status: StackStatus) -> list[str]:
    lines = ["Containers:"]
    for c in status.containers:
        lines.append(f"  {c.name} ({c.service}): {c.state}, health: {c.health}")
    if status.stats:
        lines.append("Resource usage:")
        for s in status.stats:
            lines.append(
                f"  {s.name}: CPU {s.cpu_percent:.2f}%, "
                f"memory {human_bytes(s.memory_bytes)} / {human_bytes(s.memory_limit_bytes)} ({s.memory_percent:.2f}%)"
            )
    if status.disk is not None:
        d = status.disk
        lines.append(
            f"Disk usage: images {human_bytes(d.images_bytes)}, containers {human_bytes(d.containers_bytes)}, "
            f"volumes {human_bytes(d.volumes_bytes)}, build cache {human_bytes(d.build_cache_bytes)} "
            f"(total {human_bytes(d.total_bytes)})"
        )
    return lines


def status_markdown(status: StackStatus) -> str:
    out = ["### Stack status", "", "| Container | Service | State | Health | CPU | Memory |", "|---|---|---|---|---|---|"]
    stats = {s.name: s for s in status.stats}
    for c in status.containers:
        s = stats.get(c.name)
        cpu = f"{s.cpu_percent:.2f}%" if s else "-"
        mem = f"{human_bytes(s.memory_bytes)} ({s.memory_percent:.2f}%)" if s else "-"
        out.append(f"| {c.name} | {c.service} | {c.state} | {c.health} | {cpu} | {mem} |")
    if status.disk is not None:
        d = status.disk
        out.append("")
        out.append(
            f"Disk: images {human_bytes(d.images_bytes)}, containers {human_bytes(d.containers_bytes)}, "
            f"volumes {human_bytes(d.volumes_bytes)}, build cache {human_bytes(d.build_cache_bytes)}"
        )
    return "\n".join(out) + "\n"

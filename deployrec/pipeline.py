"""Deployment pipeline: prober -> synchroniser -> reconciler -> verifier -> reporter.

The first stage to raise a :class:`DeployError` ends the run. Whatever
happened, the run produces exactly one :class:`DeploymentResult`, which is
reported before it is returned.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from dataclasses import replace
from typing import Callable

from . import db
from .docker_ops import ContainerRuntime, project_name_for
from .errors import DeployError, HealthError
from .health import HealthVerifier
from .models import DeploymentContext, DeploymentResult, DesiredRevision, HostState
from .prober import ensure_environment
from .reconciler import StackReconciler
from .repo_sync import sync_repository
from .reporter import report
from .settings import Settings, settings
from .shell import runner_for
from .status import collect_status

logger = logging.getLogger(__name__)


def build_context(cfg: Settings = settings) -> DeploymentContext:
    if not cfg.project_dir:
        raise ValueError("project directory is required (DEPLOYREC_PROJECT_DIR or --project-dir)")
    return DeploymentContext(
        project_dir=cfg.project_dir,
        runner=runner_for(cfg.host, cfg.ssh_strict_host_key_checking, cfg.command_timeout_s),
        runtime=ContainerRuntime(cfg.host),
        project_name=project_name_for(cfg.project_dir, cfg.compose_project),
        compose_file=cfg.compose_file,
        host_ref=cfg.host,
    )


def _event(level: str, message: str, project: str | None) -> None:
    try:
        db.init_db()
        db.log_event(level, message, project)
    except (sqlite3.Error, OSError) as e:
        logger.warning("Could not record event: %s", e)


def make_verifier(ctx: DeploymentContext, cfg: Settings, sleep, clock) -> HealthVerifier:
    return HealthVerifier(
        ctx,
        timeout_s=cfg.health_timeout_s,
        initial_backoff_s=cfg.health_initial_backoff_s,
        max_backoff_s=cfg.health_max_backoff_s,
        log_tail_lines=cfg.log_tail_lines,
        health_url=cfg.health_url,
        ignore_services=cfg.ignored_services,
        sleep=sleep,
        clock=clock,
    )


def _reconciler(ctx: DeploymentContext, image: str | None, cfg: Settings, sleep) -> StackReconciler:
    return StackReconciler(
        ctx,
        image_reference=image,
        image_env_var=cfg.image_env_var,
        tag_env_var=cfg.tag_env_var,
        settle_interval_s=cfg.settle_interval_s,
        backup_dir=cfg.backup_dir,
        sleep=sleep,
    )


def run_deployment(
    ctx: DeploymentContext,
    desired: DesiredRevision,
    cfg: Settings = settings,
    *,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
    auto_rollback: bool | None = None,
) -> DeploymentResult:
    started = clock()
    label = desired.image_reference or desired.ref or "HEAD"
    logger.info("Starting deployment of %s to %s", label, ctx.target)
    _event("INFO", f"Deployment of {label} to {ctx.target} started", ctx.project_name)

    revision: str | None = None
    reconciler = _reconciler(ctx, desired.image_reference, cfg, sleep)
    base = dict(
        project=ctx.project_name,
        host=ctx.host_ref,
        ref=desired.ref,
        image_reference=desired.image_reference,
    )

    try:
        host_state = HostState()
        if cfg.provision:
            logger.info("1. Ensuring Docker environment is ready...")
            host_state = ensure_environment(ctx.runner, cfg.install_script_url)

        logger.info("2. Setting up project and repository...")
        revision = sync_repository(ctx, desired.repo_url, host_state, ref=desired.ref, branches=cfg.branches)

        logger.info("3. Deploying application...")
        outcome = reconciler.reconcile()

        logger.info("4. Performing health checks...")
        observed = make_verifier(ctx, cfg, sleep, clock).verify(outcome.services)
    except DeployError as e:
        logger.error("Deployment failed at stage '%s': %s", e.stage, e)
        _event("ERROR", f"Deployment of {label} failed at {e.stage}: {e}", ctx.project_name)
        status = collect_status(ctx) if isinstance(e, HealthError) else None
        rolled_back_to = None
        if isinstance(e, HealthError) and (cfg.auto_rollback if auto_rollback is None else auto_rollback):
            rolled_back_to = _roll_back(ctx, desired.image_reference, cfg, sleep, clock)
        result = DeploymentResult(
            succeeded=False,
            failing_services=e.failing_services,
            stage=e.stage,
            error=str(e),
            exit_code=e.exit_code,
            revision=revision,
            rolled_back_to=rolled_back_to,
            backup_path=reconciler.outcome.backup_path,
            duration_s=round(clock() - started, 2),
            status=status,
            **base,
        )
    else:
        _event("INFO", f"Deployment of {label} to {ctx.target} succeeded", ctx.project_name)
        result = DeploymentResult(
            succeeded=True,
            revision=revision,
            backup_path=outcome.backup_path,
            duration_s=round(clock() - started, 2),
            status=collect_status(ctx, observed),
            **base,
        )

    report(result, cfg)
    return result


def _roll_back(ctx: DeploymentContext, failed_image: str | None, cfg: Settings, sleep, clock) -> str | None:
    try:
        db.init_db()
        previous = db.last_successful_image(ctx.project_name, exclude=failed_image)
    except (sqlite3.Error, OSError) as e:
        logger.error("Rollback skipped, history unavailable: %s", e)
        return None
    if not previous:
        logger.warning("Rollback skipped: no earlier successful image recorded for %s", ctx.project_name)
        return None

    logger.warning("Rolling back %s to last known good image %s", ctx.project_name, previous)
    _event("WARN", f"Rolling back to {previous}", ctx.project_name)
    try:
        outcome = _reconciler(ctx, previous, cfg, sleep).reconcile()
        make_verifier(ctx, cfg, sleep, clock).verify(outcome.services)
    except DeployError as e:
        logger.error("Rollback to %s failed at stage '%s': %s", previous, e.stage, e)
        _event("ERROR", f"Rollback to {previous} failed: {e}", ctx.project_name)
        return None
    _event("INFO", f"Rolled back to {previous}", ctx.project_name)
    return previous


def rollback(
    ctx: DeploymentContext,
    desired: DesiredRevision,
    cfg: Settings = settings,
    *,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> DeploymentResult:
    """Redeploy the last successful image other than the most recently deployed one."""
    previous = None
    try:
        db.init_db()
        latest = db.list_deployments(limit=1, project=ctx.project_name)
        current = latest[0]["image"] if latest else desired.image_reference
        previous = db.last_successful_image(ctx.project_name, exclude=current)
    except (sqlite3.Error, OSError) as e:
        logger.error("Deployment history unavailable: %s", e)

    if not previous:
        result = DeploymentResult(
            succeeded=False,
            stage="rollback",
            error=f"No earlier successful image recorded for {ctx.project_name}",
            exit_code=1,
            project=ctx.project_name,
            host=ctx.host_ref,
            ref=desired.ref,
        )
        report(result, cfg)
        return result

    return run_deployment(
        ctx,
        replace(desired, image_reference=previous),
        cfg,
        sleep=sleep,
        clock=clock,
        auto_rollback=False,
    )


def verify_stack(
    ctx: DeploymentContext,
    cfg: Settings = settings,
    *,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> DeploymentResult:
    """Health-check the current stack without changing it."""
    base = dict(project=ctx.project_name, host=ctx.host_ref)
    try:
        specs = _reconciler(ctx, None, cfg, sleep).load_service_specs()
        observed = make_verifier(ctx, cfg, sleep, clock).verify(specs)
    except DeployError as e:
        return DeploymentResult(
            succeeded=False,
            failing_services=e.failing_services,
            stage=e.stage,
            error=str(e),
            exit_code=e.exit_code,
            status=collect_status(ctx) if isinstance(e, HealthError) else None,
            **base,
        )
    return DeploymentResult(succeeded=True, status=collect_status(ctx, observed), **base)

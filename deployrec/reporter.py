"""Reporter: publish a DeploymentResult. Never raises."""

from __future__ import annotations

import json
import logging
import sqlite3

from . import db
from .alerts import send_failure_alert
from .models import DeploymentResult
from .settings import Settings, settings
from .status import status_lines, status_markdown

logger = logging.getLogger(__name__)


def summary_lines(result: DeploymentResult) -> list[str]:
    status = "Deployed successfully" if result.succeeded else f"FAILED at stage '{result.stage}'"
    lines = [
        f"Status: {status}",
        f"Project: {result.project}",
        f"Target: {result.host or 'localhost'}",
        f"Ref: {result.ref or '-'}",
        f"Revision: {result.revision or '-'}",
        f"Image: {result.image_reference or '-'}",
        f"Duration: {result.duration_s:.1f}s",
        f"Timestamp: {result.timestamp}",
    ]
    if result.error:
        lines.append(f"Error: {result.error}")
    if result.rolled_back_to:
        lines.append(f"Rolled back to: {result.rolled_back_to}")
    return lines


def markdown_summary(result: DeploymentResult) -> str:
    icon = "✅" if result.succeeded else "❌"
    out = [f"## {icon} Deployment Summary", ""]
    for line in summary_lines(result):
        key, _, value = line.partition(": ")
        out.append(f"- **{key}**: {value}")
    for svc in result.failing_services:
        out.append("")
        out.append(f"### {svc.name} ({svc.state}, health: {svc.health})")
        if svc.log_tail:
            out.append("```")
            out.append(svc.log_tail.rstrip())
            out.append("```")
    if result.status is not None:
        out.append("")
        out.append(status_markdown(result.status).rstrip())
    return "\n".join(out) + "\n"


def report(result: DeploymentResult, cfg: Settings = settings) -> int | None:
    """Log, persist and publish ``result``. Returns the history row id if stored."""
    log = logger.info if result.succeeded else logger.error
    for line in summary_lines(result):
        log(line)
    for svc in result.failing_services:
        logger.error("--- Logs for %s (%s, health: %s) ---", svc.name, svc.state, svc.health)
        for line in svc.log_tail.splitlines():
            logger.error("  %s", line)
    if result.status is not None:
        for line in status_lines(result.status):
            logger.info(line)

    row_id = None
    try:
        db.init_db()
        row_id = db.record_deployment(result)
    except (sqlite3.Error, OSError) as e:
        logger.warning("Could not record deployment history: %s", e)

    if cfg.summary_path:
        try:
            with open(cfg.summary_path, "a", encoding="utf-8") as fh:
                fh.write(markdown_summary(result))
        except OSError as e:
            logger.warning("Could not write step summary to %s: %s", cfg.summary_path, e)

    if cfg.report_json:
        try:
            with open(cfg.report_json, "w", encoding="utf-8") as fh:
                json.dump(result.to_dict(), fh, indent=2, ensure_ascii=False)
        except OSError as e:
            logger.warning("Could not write JSON report to %s: %s", cfg.report_json, e)

    if not result.succeeded and send_failure_alert(result, cfg):
        logger.info("Failure alert sent to %s", cfg.email_to)

    return row_id

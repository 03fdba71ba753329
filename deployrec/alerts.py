from __future__ import annotations

import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from .models import DeploymentResult
from .settings import Settings, settings


def send_email(subject: str, body: str, cfg: Settings = settings) -> bool:
    """Send an email if SMTP settings are configured.

    Environment variables:
      - DEPLOYREC_ENABLE_EMAIL=true
      - DEPLOYREC_SMTP_HOST / DEPLOYREC_SMTP_PORT
      - DEPLOYREC_SMTP_USER / DEPLOYREC_SMTP_PASSWORD
      - DEPLOYREC_EMAIL_FROM / DEPLOYREC_EMAIL_TO
    """
    if not cfg.enable_email:
        return False
    if not all([cfg.smtp_host, cfg.smtp_port, cfg.smtp_user, cfg.smtp_password, cfg.email_from, cfg.email_to]):
        return False

    msg = MIMEMultipart()
    msg["From"] = cfg.email_from
    msg["To"] = cfg.email_to
    msg["Subject"] = subject
    msg.attach(MIMEText(body, "plain"))

    try:
        server = smtplib.SMTP(cfg.smtp_host, cfg.smtp_port, timeout=30)
        try:
            server.starttls()
            server.login(cfg.smtp_user, cfg.smtp_password)
            server.sendmail(cfg.email_from, [cfg.email_to], msg.as_string())
        finally:
            server.quit()
        return True
    except (smtplib.SMTPException, OSError):
        return False


def failure_email(result: DeploymentResult) -> tuple[str, str]:
    subject = f"DEPLOY FAILED: {result.project} @ {result.host or 'localhost'} (stage {result.stage})"
    lines = [
        f"Project: {result.project}",
        f"Host: {result.host or 'localhost'}",
        f"Ref: {result.ref or '-'}",
        f"Revision: {result.revision or '-'}",
        f"Image: {result.image_reference or '-'}",
        f"Stage: {result.stage}",
        f"Exit code: {result.exit_code}",
        f"Error: {result.error}",
    ]
    if result.rolled_back_to:
        lines.append(f"Rolled back to: {result.rolled_back_to}")
    for svc in result.failing_services:
        lines.append("")
        lines.append(f"--- {svc.name} ({svc.service}) state={svc.state} health={svc.health} ---")
        if svc.log_tail:
            lines.append(svc.log_tail.rstrip())
    return subject, "\n".join(lines)


def send_failure_alert(result: DeploymentResult, cfg: Settings = settings) -> bool:
    if result.succeeded:
        return False
    subject, body = failure_email(result)
    return send_email(subject, body, cfg)

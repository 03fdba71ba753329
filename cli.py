from __future__ import annotations

import argparse
import json
import os
import sys
from dataclasses import replace

import requests

from deployrec.errors import ManifestError
from deployrec.logging_config import setup_logging
from deployrec.manifest import encode_manifest, write_github_output
from deployrec.models import DesiredRevision
from deployrec.pipeline import build_context, rollback, run_deployment, verify_stack
from deployrec.reporter import summary_lines
from deployrec.status import status_lines
from deployrec.settings import settings


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _add_target_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--host", help="user@host to deploy to over ssh (default: local)")
    p.add_argument("--project-dir", help="Checkout directory on the target")
    p.add_argument("--compose-file", help="Compose file inside the project dir (default: pwd.yml)")
    p.add_argument("--compose-project", help="Compose project name (default: derived from project dir)")
    p.add_argument("--settle", type=float, help="Seconds to wait after bring-up before health checks")
    p.add_argument("--health-timeout", type=float, help="Seconds to keep polling health")
    p.add_argument("--health-url", help="Optional HTTP endpoint that must answer 2xx")


def _add_revision_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--repo-url", help="Deployment repository URL")
    p.add_argument("--ref", help="Tag or branch to check out (default: main, then master, then current)")


def _overrides(args: argparse.Namespace) -> dict:
    mapping = {
        "host": "host",
        "project_dir": "project_dir",
        "compose_file": "compose_file",
        "compose_project": "compose_project",
        "settle": "settle_interval_s",
        "health_timeout": "health_timeout_s",
        "health_url": "health_url",
        "repo_url": "repo_url",
        "ref": "ref",
        "image": "image_reference",
        "report_json": "report_json",
    }
    out = {}
    for arg, field_name in mapping.items():
        value = getattr(args, arg, None)
        if value is not None:
            out[field_name] = value
    if getattr(args, "skip_provision", False):
        out["provision"] = False
    if getattr(args, "auto_rollback", False):
        out["auto_rollback"] = True
    return out


def _desired(cfg) -> DesiredRevision:
    return DesiredRevision(repo_url=cfg.repo_url, ref=cfg.ref, image_reference=cfg.image_reference)


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Deployment Reconciler CLI")
    p.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ERROR")
    p.add_argument("--api", default="http://localhost:8000", help="API base URL (history/events/trigger)")
    p.add_argument("--api-user", default=settings.api_user)
    p.add_argument("--api-password", default=settings.api_password)
    sub = p.add_subparsers(dest="cmd", required=True)

    s_dep = sub.add_parser("deploy", help="Provision, sync, reconcile and verify")
    _add_target_args(s_dep)
    _add_revision_args(s_dep)
    s_dep.add_argument("--image", help="Image reference (name:tag) passed to compose")
    s_dep.add_argument("--skip-provision", action="store_true", help="Do not check/install docker")
    s_dep.add_argument("--auto-rollback", action="store_true", help="Redeploy last good image on failed health checks")
    s_dep.add_argument("--report-json", help="Write the result as JSON to this path")

    s_rb = sub.add_parser("rollback", help="Redeploy the previous successful image")
    _add_target_args(s_rb)
    _add_revision_args(s_rb)
    s_rb.add_argument("--report-json", help="Write the result as JSON to this path")

    s_ver = sub.add_parser("verify", help="Health-check the running stack without changing it")
    _add_target_args(s_ver)

    s_man = sub.add_parser("manifest", help="Validate apps.json and print it base64-encoded")
    s_man.add_argument("path", nargs="?", default="apps.json")
    s_man.add_argument("--github-output", action="store_true", help="Append APPS_JSON_BASE64=... to $GITHUB_OUTPUT")

    s_hist = sub.add_parser("history", help="Show deployment history from the API")
    s_hist.add_argument("--limit", type=int, default=20)

    s_ev = sub.add_parser("events", help="Show events from the API")
    s_ev.add_argument("--limit", type=int, default=20)

    s_trig = sub.add_parser("trigger", help="Ask the API to run a deployment")
    s_trig.add_argument("--ref")
    s_trig.add_argument("--image")
    s_trig.add_argument("--repo-url")

    args = p.parse_args(argv)
    setup_logging(args.log_level or settings.log_level, settings.log_file)

    if args.cmd in {"deploy", "rollback", "verify"}:
        cfg = replace(settings, **_overrides(args))
        try:
            ctx = build_context(cfg)
        except ValueError as e:
            print(f"error: {e}", file=sys.stderr)
            return 2
        if args.cmd != "verify" and not cfg.repo_url:
            print("error: --repo-url (or DEPLOYREC_REPO_URL) is required", file=sys.stderr)
            return 2
        if args.cmd == "deploy":
            result = run_deployment(ctx, _desired(cfg), cfg)
        elif args.cmd == "rollback":
            result = rollback(ctx, _desired(cfg), cfg)
        else:
            result = verify_stack(ctx, cfg)
            for line in summary_lines(result):
                print(line)
            if result.status is not None:
                for line in status_lines(result.status):
                    print(line)
        return result.exit_code

    if args.cmd == "manifest":
        try:
            blob = encode_manifest(args.path)
        except ManifestError as e:
            print(f"error: {e}", file=sys.stderr)
            return e.exit_code
        if args.github_output:
            if not write_github_output(blob):
                print("error: GITHUB_OUTPUT is not set", file=sys.stderr)
                return 1
        else:
            print(blob)
        return 0

    base = args.api.rstrip("/")
    auth = (args.api_user, args.api_password or os.getenv("DEPLOYREC_API_PASSWORD", ""))

    if args.cmd == "history":
        r = requests.get(f"{base}/deployments", params={"limit": args.limit}, auth=auth, timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "events":
        r = requests.get(f"{base}/events", params={"limit": args.limit}, auth=auth, timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "trigger":
        payload = {"ref": args.ref, "image": args.image, "repo_url": args.repo_url}
        r = requests.post(f"{base}/deployments", json=payload, auth=auth, timeout=30)
        _print(r.json())
        return 0 if r.ok else 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))

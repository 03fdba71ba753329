"""Deployment Reconciler (deployrec).

One-shot, idempotent reconciler that brings a host's docker compose stack in
line with a desired revision and image:
 - environment probing (docker + compose plugin, installed when missing)
 - repository synchronisation (clone-or-update, local edits stashed)
 - stack reconciliation (pull, down --remove-orphans, force-recreate)
 - health verification with bounded backoff
 - reporting (logs, sqlite history, CI step summary, e-mail alert)

Each stage is a thin orchestrator over external tools, so the code stays small
enough to audit.
"""

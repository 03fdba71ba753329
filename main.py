"""HTTP API for triggering and inspecting deployments.

Run with: uvicorn main:app --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import asdict, replace
from threading import Thread

from fastapi import Depends, FastAPI, HTTPException, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from deployrec import db
from deployrec.api_models import DeployRequest, RollbackRequest, RunAccepted
from deployrec.logging_config import setup_logging
from deployrec.models import DesiredRevision
from deployrec.pipeline import build_context, rollback, run_deployment
from deployrec.runtime import RunStatus, RuntimeState
from deployrec.settings import settings

logger = logging.getLogger(__name__)

app = FastAPI(title="Deployment Reconciler")
security = HTTPBasic()
RUNTIME = RuntimeState()


@app.on_event("startup")
def startup() -> None:
    setup_logging(settings.log_level, settings.log_file)
    db.init_db()


def get_current_username(credentials: HTTPBasicCredentials = Depends(security)) -> str:
    expected_password = settings.api_password or ""
    user_ok = secrets.compare_digest(credentials.username, settings.api_user)
    pass_ok = secrets.compare_digest(credentials.password, expected_password)
    if not (expected_password and user_ok and pass_ok):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Basic"},
        )
    return credentials.username


def _spawn(target, *args) -> None:
    Thread(target=target, args=args, daemon=True).start()


def _execute(run_id: str, kind: str, desired: DesiredRevision, auto_rollback: bool | None, provision: bool) -> None:
    result = None
    message = None
    try:
        cfg = replace(settings, provision=provision)
        ctx = build_context(cfg)
        if kind == "rollback":
            result = rollback(ctx, desired, cfg)
        else:
            result = run_deployment(ctx, desired, cfg, auto_rollback=auto_rollback)
    except Exception as e:
        # Keep the API usable after an unexpected crash inside a run.
        logger.exception("Run %s crashed", run_id)
        message = f"{type(e).__name__}: {e}"
    finally:
        RUNTIME.finish(run_id, result, message)


def _begin(kind: str, desired: DesiredRevision, username: str, auto_rollback: bool | None = None, provision: bool = True) -> RunAccepted:
    st = RunStatus(
        id=secrets.token_hex(6),
        kind=kind,
        target=f"{settings.host or 'localhost'}:{settings.project_dir}",
        state="running",
        message=f"{kind} requested by {username}",
    )
    if not RUNTIME.try_begin(st):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Another deployment is in progress")
    db.log_event("INFO", f"{kind} {st.id} requested by {username}")
    _spawn(_execute, st.id, kind, desired, auto_rollback, provision)
    return RunAccepted(run_id=st.id, state=st.state, message=st.message)


def _desired(repo_url: str | None, ref: str | None, image: str | None) -> DesiredRevision:
    url = repo_url or settings.repo_url
    if not url:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="repo_url is required")
    return DesiredRevision(repo_url=url, ref=ref or settings.ref, image_reference=image or settings.image_reference)


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "healthy"}


@app.post("/deployments", status_code=status.HTTP_202_ACCEPTED, response_model=RunAccepted)
def trigger_deployment(req: DeployRequest, username: str = Depends(get_current_username)) -> RunAccepted:
    desired = _desired(req.repo_url, req.ref, req.image)
    return _begin("deploy", desired, username, auto_rollback=req.auto_rollback, provision=req.provision)


@app.post("/rollback", status_code=status.HTTP_202_ACCEPTED, response_model=RunAccepted)
def trigger_rollback(req: RollbackRequest, username: str = Depends(get_current_username)) -> RunAccepted:
    desired = _desired(req.repo_url, req.ref, None)
    return _begin("rollback", desired, username, provision=False)


@app.get("/deployments")
def list_deployments(limit: int = 20, project: str | None = None, username: str = Depends(get_current_username)):
    return db.list_deployments(limit=max(1, min(limit, 500)), project=project)


@app.get("/deployments/{deployment_id}")
def get_deployment(deployment_id: int, username: str = Depends(get_current_username)):
    row = db.get_deployment(deployment_id)
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="unknown deployment")
    return row


@app.get("/runs/{run_id}")
def get_run(run_id: str, username: str = Depends(get_current_username)):
    st = RUNTIME.get_run(run_id)
    if st is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="unknown run")
    return asdict(st)


@app.get("/runs")
def list_runs(username: str = Depends(get_current_username)):
    return [asdict(st) for st in RUNTIME.list_runs()]


@app.get("/events")
def events(limit: int = 100, username: str = Depends(get_current_username)):
    return db.latest_events(limit=max(1, min(limit, 1000)))

import base64
import importlib.util
import os

import pytest
from fastapi.testclient import TestClient

from deployrec import db
from deployrec.models import DeploymentResult
from deployrec.runtime import RunStatus
from deployrec.settings import Settings


def _import_main_module(project_root):
    """Import main.py as a module without requiring it to be installed as a package."""
    main_path = os.path.join(project_root, "main.py")
    spec = importlib.util.spec_from_file_location("deployrec_main", main_path)
    mod = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(mod)  # type: ignore[attr-defined]
    return mod


def _basic_auth(user: str, password: str) -> dict:
    token = base64.b64encode(f"{user}:{password}".encode()).decode()
    return {"Authorization": f"Basic {token}"}


AUTH = _basic_auth("admin", "secret")


@pytest.fixture
def main(tmp_path, monkeypatch):
    project_root = os.path.dirname(os.path.dirname(__file__))
    mod = _import_main_module(project_root)

    cfg = Settings(
        db_path=str(tmp_path / "api.db"),
        api_password="secret",
        project_dir="/srv/frappe",
        repo_url="https://github.com/acme/frappe_docker.git",
        log_file=None,
        summary_path=None,
        report_json=None,
        enable_email=False,
    )
    monkeypatch.setattr(mod, "settings", cfg)
    monkeypatch.setattr(db, "settings", cfg)

    # Run synchronously so the test can observe the finished run.
    monkeypatch.setattr(mod, "_spawn", lambda target, *args: target(*args))
    monkeypatch.setattr(mod, "build_context", lambda cfg: "ctx")
    return mod


def test_endpoints_require_basic_auth(main):
    with TestClient(main.app) as client:
        assert client.get("/health").status_code == 200

        assert client.get("/deployments").status_code == 401
        assert client.get("/deployments", headers=_basic_auth("admin", "wrong")).status_code == 401
        assert client.get("/deployments", headers=AUTH).status_code == 200


def test_no_password_configured_rejects_everyone(main, monkeypatch):
    from dataclasses import replace

    monkeypatch.setattr(main, "settings", replace(main.settings, api_password=None))
    with TestClient(main.app) as client:
        assert client.get("/events", headers=_basic_auth("admin", "")).status_code == 401


def test_trigger_deployment_runs_pipeline(main, monkeypatch):
    seen = {}

    def fake_run(ctx, desired, cfg, auto_rollback=None):
        seen.update(ctx=ctx, desired=desired, provision=cfg.provision, auto_rollback=auto_rollback)
        result = DeploymentResult(succeeded=True, project="frappe", image_reference=desired.image_reference)
        db.record_deployment(result)
        return result

    monkeypatch.setattr(main, "run_deployment", fake_run)

    with TestClient(main.app) as client:
        r = client.post(
            "/deployments",
            json={"image": "acme/frappe-custom:v1.4.0", "provision": False, "auto_rollback": True},
            headers=AUTH,
        )
        assert r.status_code == 202
        run_id = r.json()["run_id"]

        run = client.get(f"/runs/{run_id}", headers=AUTH).json()
        assert run["state"] == "succeeded"
        assert run["kind"] == "deploy"
        assert run["result"]["image_reference"] == "acme/frappe-custom:v1.4.0"

        rows = client.get("/deployments", headers=AUTH).json()
        assert rows[0]["image"] == "acme/frappe-custom:v1.4.0"
        assert client.get(f"/deployments/{rows[0]['id']}", headers=AUTH).status_code == 200

        events = client.get("/events", headers=AUTH).json()
        assert any(run_id in e["message"] for e in events)

    assert seen["ctx"] == "ctx"
    assert seen["desired"].repo_url == "https://github.com/acme/frappe_docker.git"
    assert seen["provision"] is False
    assert seen["auto_rollback"] is True


def test_crashed_run_is_marked_failed(main, monkeypatch):
    def boom(ctx, desired, cfg, auto_rollback=None):
        raise RuntimeError("docker daemon went away")

    monkeypatch.setattr(main, "run_deployment", boom)

    with TestClient(main.app) as client:
        run_id = client.post("/deployments", json={}, headers=AUTH).json()["run_id"]
        run = client.get(f"/runs/{run_id}", headers=AUTH).json()

    assert run["state"] == "failed"
    assert "docker daemon went away" in run["message"]
    assert not main.RUNTIME.busy()


def test_concurrent_run_is_rejected(main):
    main.RUNTIME.try_begin(RunStatus(id="held", kind="deploy", target="localhost:/srv/frappe", state="running", message=""))

    with TestClient(main.app) as client:
        r = client.post("/deployments", json={}, headers=AUTH)
        assert r.status_code == 409
        assert [run["id"] for run in client.get("/runs", headers=AUTH).json()] == ["held"]


def test_rollback_endpoint(main, monkeypatch):
    calls = []

    def fake_rollback(ctx, desired, cfg):
        calls.append(desired.ref)
        return DeploymentResult(succeeded=False, stage="rollback", error="no previous successful deployment", exit_code=1)

    monkeypatch.setattr(main, "rollback", fake_rollback)

    with TestClient(main.app) as client:
        run_id = client.post("/rollback", json={"ref": "v1.3.0"}, headers=AUTH).json()["run_id"]
        run = client.get(f"/runs/{run_id}", headers=AUTH).json()

    assert calls == ["v1.3.0"]
    assert run["state"] == "failed"
    assert run["message"] == "no previous successful deployment"


def test_unknown_ids_return_404(main):
    with TestClient(main.app) as client:
        assert client.get("/deployments/999", headers=AUTH).status_code == 404
        assert client.get("/runs/nope", headers=AUTH).status_code == 404


def test_missing_repo_url_is_rejected(main, monkeypatch):
    from dataclasses import replace

    monkeypatch.setattr(main, "settings", replace(main.settings, repo_url=None))
    with TestClient(main.app) as client:
        assert client.post("/deployments", json={}, headers=AUTH).status_code == 422

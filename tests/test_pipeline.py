from dataclasses import replace

from conftest import REPO_URL, FakeRuntime, healthy_stack, running
from deployrec import db
from deployrec.models import DeploymentContext, DeploymentResult, DesiredRevision
from deployrec.pipeline import rollback, run_deployment, verify_stack

PULL = "-f pwd.yml pull"
NO_WAIT = dict(sleep=lambda s: None, clock=lambda: 0.0)


def _seed_success(cfg, ctx, image):
    db.init_db()
    db.record_deployment(DeploymentResult(succeeded=True, project=ctx.project_name, image_reference=image))


def test_healthy_rollout_succeeds(ctx, runner, cfg):
    desired = DesiredRevision(REPO_URL, ref=None, image_reference="acme/frappe-custom:v1.4.0")

    result = run_deployment(ctx, desired, cfg, **NO_WAIT)

    assert result.succeeded is True
    assert result.failing_services == ()
    assert result.exit_code == 0
    assert result.stage is None
    assert result.revision.startswith("0123456789ab")
    assert result.image_reference == "acme/frappe-custom:v1.4.0"

    (row,) = db.list_deployments(project="frappe")
    assert row["succeeded"] is True
    assert row["image"] == "acme/frappe-custom:v1.4.0"


def test_pull_failure_stops_before_touching_containers(ctx, runner, cfg):
    runner.on(PULL, 1, stderr="dial tcp: lookup registry-1.docker.io: no such host")

    result = run_deployment(ctx, DesiredRevision(REPO_URL), cfg, **NO_WAIT)

    assert result.succeeded is False
    assert result.stage == "pull"
    assert result.exit_code == 1
    assert "no such host" in result.error
    assert not runner.ran("down --remove-orphans")
    assert not runner.ran(" up ")
    assert ctx.runtime.observe_calls == 0
    assert db.list_deployments()[0]["stage"] == "pull"


def test_one_unhealthy_service_is_reported_with_logs(ctx, runner, cfg):
    stack = healthy_stack()
    stack[2] = running("frappe-frontend-1", "frontend", "unhealthy")
    runtime = FakeRuntime([stack], logs={"frappe-frontend-1": "upstream timed out (110: Connection timed out)\n"})
    ctx = replace(ctx, runtime=runtime)

    result = run_deployment(ctx, DesiredRevision(REPO_URL), cfg, **NO_WAIT)

    assert result.succeeded is False
    assert result.stage == "verify"
    (svc,) = result.failing_services
    assert svc.name == "frappe-frontend-1"
    assert "upstream timed out" in svc.log_tail
    stored = db.list_deployments()[0]["failing_services"]
    assert stored[0]["name"] == "frappe-frontend-1"


def test_sync_failure_prevents_destructive_actions(ctx, runner, cfg):
    runner.on("fetch origin", 128, stderr="fatal: could not read Username")

    result = run_deployment(ctx, DesiredRevision(REPO_URL), cfg, **NO_WAIT)

    assert result.stage == "sync"
    assert result.exit_code == 128
    assert not runner.ran("docker compose")


def test_provisioning_runs_first_when_enabled(ctx, runner, cfg):
    result = run_deployment(ctx, DesiredRevision(REPO_URL), replace(cfg, provision=True), **NO_WAIT)

    assert result.succeeded
    assert runner.index("command -v docker") < runner.index("git -C") < runner.index(PULL)


def test_auto_rollback_to_last_good_image(ctx, runner, cfg):
    _seed_success(cfg, ctx, "acme/frappe-custom:v1.3.0")
    bad = healthy_stack()
    bad[0] = running("frappe-backend-1", "backend", "unhealthy")
    ctx = replace(ctx, runtime=FakeRuntime([bad, healthy_stack()]))

    result = run_deployment(
        ctx,
        DesiredRevision(REPO_URL, image_reference="acme/frappe-custom:v1.4.0"),
        replace(cfg, auto_rollback=True),
        **NO_WAIT,
    )

    assert result.succeeded is False
    assert result.rolled_back_to == "acme/frappe-custom:v1.3.0"
    pulls = [i for i, c in enumerate(runner.calls) if PULL in c]
    assert len(pulls) == 2
    assert runner.envs[pulls[-1]]["CUSTOM_TAG"] == "v1.3.0"


def test_no_rollback_without_history(ctx, runner, cfg):
    bad = healthy_stack()[:1]
    ctx = replace(ctx, runtime=FakeRuntime([bad]))

    result = run_deployment(ctx, DesiredRevision(REPO_URL), replace(cfg, auto_rollback=True), **NO_WAIT)

    assert result.stage == "verify"
    assert result.rolled_back_to is None
    assert runner.count(PULL) == 1


def test_manual_rollback_redeploys_previous_image(ctx, runner, cfg):
    _seed_success(cfg, ctx, "acme/frappe-custom:v1.3.0")
    _seed_success(cfg, ctx, "acme/frappe-custom:v1.4.0")

    result = rollback(ctx, DesiredRevision(REPO_URL), cfg, **NO_WAIT)

    assert result.succeeded
    assert result.image_reference == "acme/frappe-custom:v1.3.0"


def test_manual_rollback_without_history_fails(ctx, runner, cfg):
    result = rollback(ctx, DesiredRevision(REPO_URL), cfg, **NO_WAIT)

    assert result.succeeded is False
    assert result.stage == "rollback"
    assert not runner.ran("docker compose")


def test_verify_stack_reads_current_state_only(ctx, runner, cfg):
    result = verify_stack(ctx, cfg, **NO_WAIT)

    assert result.succeeded
    assert not runner.ran(PULL)
    assert runner.ran("config --format json")


def test_remote_context_label(runner, runtime):
    ctx = DeploymentContext("/srv/frappe", runner, runtime, "frappe", host_ref="deploy@10.0.0.5")
    assert ctx.target == "deploy@10.0.0.5:/srv/frappe"


def test_unusable_history_path_does_not_abort_the_run(ctx, runner, cfg, tmp_path, monkeypatch):
    blocker = tmp_path / "afile"
    blocker.write_text("")
    broken = replace(cfg, db_path=str(blocker / "sub" / "deployrec.db"))
    monkeypatch.setattr(db, "settings", broken)

    result = run_deployment(ctx, DesiredRevision(REPO_URL), broken, **NO_WAIT)

    assert result.succeeded is True
    assert runner.ran(PULL)


def test_successful_run_carries_stack_status(ctx, runner, cfg, tmp_path):
    summary = tmp_path / "summary.md"

    result = run_deployment(ctx, DesiredRevision(REPO_URL), replace(cfg, summary_path=str(summary)), **NO_WAIT)

    assert [c.name for c in result.status.containers] == ["frappe-backend-1", "frappe-db-1", "frappe-frontend-1"]
    assert len(result.status.stats) == 3
    assert result.status.disk.images_bytes == 3 * 1024**3
    assert "### Stack status" in summary.read_text()


def test_status_collection_failure_is_not_fatal(ctx, runner, cfg):
    from docker.errors import DockerException

    ctx.runtime.status_error = DockerException("stats unavailable")

    result = run_deployment(ctx, DesiredRevision(REPO_URL), cfg, **NO_WAIT)

    assert result.succeeded is True
    assert result.status is None

import pytest

from deployrec.shell import CommandFailed, LocalRunner, SshRunner, runner_for


def test_local_runner_captures_output():
    result = LocalRunner().run(["sh", "-c", "echo ready"])
    assert result.ok
    assert result.stdout.strip() == "ready"


def test_local_runner_raises_on_failure_when_checked():
    runner = LocalRunner()
    with pytest.raises(CommandFailed) as exc:
        runner.run(["sh", "-c", "echo boom >&2; exit 3"])
    assert exc.value.returncode == 3
    assert "boom" in str(exc.value)

    assert runner.run(["sh", "-c", "exit 3"], check=False).returncode == 3


def test_local_runner_missing_binary():
    result = LocalRunner().run(["definitely-not-a-real-binary-xyz"], check=False)
    assert result.returncode == 127


def test_local_runner_env_and_files(tmp_path):
    runner = LocalRunner()
    out = runner.run(["sh", "-c", 'echo "$CUSTOM_TAG"'], env={"CUSTOM_TAG": "v1.4.0"})
    assert out.stdout.strip() == "v1.4.0"

    target = tmp_path / "backup.json"
    runner.write_text(str(target), "[]")
    assert runner.exists(str(target), "f")
    assert runner.exists(str(tmp_path), "d")
    assert not runner.exists(str(tmp_path / "nope"))


def test_ssh_runner_builds_remote_command():
    runner = SshRunner("deploy@10.0.0.5")
    remote = runner.remote_command(
        ["docker", "compose", "-f", "pwd.yml", "pull"],
        cwd="/srv/my frappe",
        env={"CUSTOM_TAG": "v1.4.0", "CUSTOM_IMAGE": "acme/frappe-custom"},
    )
    assert remote == (
        "cd '/srv/my frappe' && env CUSTOM_IMAGE=acme/frappe-custom CUSTOM_TAG=v1.4.0 docker compose -f pwd.yml pull"
    )


def test_ssh_runner_host_key_policy():
    loose = SshRunner("deploy@10.0.0.5").ssh_args("true")
    strict = SshRunner("deploy@10.0.0.5", strict_host_key_checking=True).ssh_args("true")
    assert "StrictHostKeyChecking=no" in loose
    assert "StrictHostKeyChecking=yes" in strict
    assert loose[-2:] == ["deploy@10.0.0.5", "true"]


def test_runner_for():
    assert isinstance(runner_for(None), LocalRunner)
    assert isinstance(runner_for("deploy@host"), SshRunner)

"""Environment prober: make sure docker and its compose plugin are usable."""

from __future__ import annotations

import logging

from .errors import ProvisionError
from .models import HostState, ToolName
from .shell import CommandFailed, CommandRunner

logger = logging.getLogger(__name__)

INSTALL_SCRIPT_PATH = "/tmp/get-docker.sh"
DOCKER_GROUP = "docker"


def has_docker(runner: CommandRunner) -> bool:
    return runner.run(["sh", "-c", "command -v docker"], check=False).ok


def has_compose(runner: CommandRunner) -> bool:
    return runner.run(["docker", "compose", "version"], check=False).ok


def ensure_environment(runner: CommandRunner, install_script_url: str = "https://get.docker.com") -> HostState:
    """Install whatever of docker / compose / group membership is missing.

    Checks come before every action, so a second call on a provisioned host
    runs only the probes.
    """
    state = HostState()
    apt_updated = False

    def apt_update() -> None:
        nonlocal apt_updated
        if not apt_updated:
            runner.run(["sudo", "apt-get", "update"])
            apt_updated = True

    try:
        if has_docker(runner):
            logger.info("Docker already installed")
        else:
            logger.info("Installing Docker...")
            apt_update()
            runner.run(["curl", "-fsSL", install_script_url, "-o", INSTALL_SCRIPT_PATH])
            try:
                runner.run(["sudo", "sh", INSTALL_SCRIPT_PATH])
            finally:
                runner.run(["rm", "-f", INSTALL_SCRIPT_PATH], check=False)
            logger.info("Docker installed")
        state.tools_installed.add(ToolName.DOCKER)

        if has_compose(runner):
            logger.info("Docker Compose plugin already installed")
        else:
            logger.info("Installing Docker Compose plugin...")
            apt_update()
            runner.run(["sudo", "apt-get", "install", "-y", "docker-compose-plugin"])
            logger.info("Docker Compose plugin installed")
        state.tools_installed.add(ToolName.COMPOSE)

        _ensure_group_membership(runner)

        runner.run(["docker", "--version"])
        runner.run(["docker", "compose", "version"])
    except CommandFailed as e:
        raise ProvisionError(str(e), exit_code=e.returncode) from e

    logger.info("Docker environment ready")
    return state


def _ensure_group_membership(runner: CommandRunner) -> None:
    user = runner.run(["id", "-un"]).stdout.strip()
    # Ask the group database; `id -nG` alone reports the groups of this session.
    groups = runner.run(["id", "-nG", user] if user else ["id", "-nG"]).stdout.split()
    if DOCKER_GROUP in groups:
        return
    logger.info("Adding user %s to the %s group...", user, DOCKER_GROUP)
    runner.run(["sudo", "usermod", "-aG", DOCKER_GROUP, user])
    # Membership applies to new login sessions only.
    logger.warning("User %s added to the %s group; it takes effect on the next login session", user, DOCKER_GROUP)

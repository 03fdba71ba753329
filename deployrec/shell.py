"""Process invocation boundary.

Every stage talks to the host through a :class:`CommandRunner`: the local
machine via ``subprocess`` or a remote one over ``ssh``. Runners return a
:class:`CommandResult` and raise :class:`CommandFailed` on a non-zero exit
when ``check`` is set.
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Sequence

logger = logging.getLogger(__name__)

# Exit status used when the command could not be started or timed out.
SPAWN_FAILED = 127
TIMED_OUT = 124


@dataclass(frozen=True)
class CommandResult:
    args: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def command(self) -> str:
        return shlex.join(self.args)


class CommandFailed(Exception):
    def __init__(self, result: CommandResult):
        self.result = result
        detail = result.stderr.strip() or result.stdout.strip() or "no output"
        super().__init__(f"`{result.command}` exited with code {result.returncode}: {detail}")

    @property
    def returncode(self) -> int:
        return self.result.returncode


class CommandRunner:
    """Base runner. Subclasses implement :meth:`_execute`."""

    name = "runner"

    def __init__(self, timeout_s: int = 1800):
        self.timeout_s = timeout_s

    def run(
        self,
        args: Sequence[str],
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        check: bool = True,
        timeout: int | None = None,
        input: str | None = None,
    ) -> CommandResult:
        args = tuple(str(a) for a in args)
        logger.debug("[%s] $ %s (cwd=%s)", self.name, shlex.join(args), cwd or ".")
        result = self._execute(args, cwd, dict(env or {}), timeout or self.timeout_s, input)
        if not result.ok:
            logger.debug("[%s] exit %s: %s", self.name, result.returncode, result.stderr.strip())
            if check:
                raise CommandFailed(result)
        return result

    def _execute(
        self,
        args: tuple[str, ...],
        cwd: str | None,
        env: dict[str, str],
        timeout: int,
        input: str | None,
    ) -> CommandResult:
        raise NotImplementedError

    def exists(self, path: str, kind: str = "e") -> bool:
        """``test -<kind> path`` on the target: e=any, d=directory, f=file."""
        return self.run(["test", f"-{kind}", path], check=False).ok

    def write_text(self, path: str, text: str) -> None:
        self.run(["sh", "-c", f"cat > {shlex.quote(path)}"], input=text)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r}>"


class LocalRunner(CommandRunner):
    name = "local"

    def _execute(self, args, cwd, env, timeout, input):
        start = time.monotonic()
        try:
            proc = subprocess.run(
                list(args),
                cwd=cwd,
                env={**os.environ, **env} if env else None,
                input=input,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            return CommandResult(args, TIMED_OUT, stderr=f"Command timed out after {timeout}s")
        except OSError as e:
            return CommandResult(args, SPAWN_FAILED, stderr=f"Command execution error: {e}")
        elapsed_ms = int((time.monotonic() - start) * 1000)
        return CommandResult(args, proc.returncode, proc.stdout, proc.stderr, elapsed_ms)

    def exists(self, path: str, kind: str = "e") -> bool:
        p = Path(path)
        if kind == "d":
            return p.is_dir()
        if kind == "f":
            return p.is_file()
        return p.exists()

    def write_text(self, path: str, text: str) -> None:
        Path(path).write_text(text, encoding="utf-8")


class SshRunner(CommandRunner):
    """Run commands on ``host`` (``user@host``) through the ssh client."""

    name = "ssh"

    def __init__(self, host: str, strict_host_key_checking: bool = False, timeout_s: int = 1800):
        super().__init__(timeout_s=timeout_s)
        self.host = host
        self.strict_host_key_checking = strict_host_key_checking

    def remote_command(self, args: Sequence[str], cwd: str | None, env: Mapping[str, str]) -> str:
        cmd = shlex.join(args)
        if env:
            assignments = " ".join(f"{k}={shlex.quote(v)}" for k, v in sorted(env.items()))
            cmd = f"env {assignments} {cmd}"
        if cwd:
            cmd = f"cd {shlex.quote(cwd)} && {cmd}"
        return cmd

    def ssh_args(self, remote: str) -> list[str]:
        return [
            "ssh",
            "-o",
            "BatchMode=yes",
            "-o",
            f"StrictHostKeyChecking={'yes' if self.strict_host_key_checking else 'no'}",
            self.host,
            remote,
        ]

    def _execute(self, args, cwd, env, timeout, input):
        ssh_args = self.ssh_args(self.remote_command(args, cwd, env))
        start = time.monotonic()
        try:
            proc = subprocess.run(ssh_args, input=input, capture_output=True, text=True, timeout=timeout)
        except subprocess.TimeoutExpired:
            return CommandResult(args, TIMED_OUT, stderr=f"Command timed out after {timeout}s on {self.host}")
        except OSError as e:
            return CommandResult(args, SPAWN_FAILED, stderr=f"ssh execution error: {e}")
        elapsed_ms = int((time.monotonic() - start) * 1000)
        return CommandResult(args, proc.returncode, proc.stdout, proc.stderr, elapsed_ms)


def runner_for(host: str | None, strict_host_key_checking: bool = False, timeout_s: int = 1800) -> CommandRunner:
    if host:
        return SshRunner(host, strict_host_key_checking=strict_host_key_checking, timeout_s=timeout_s)
    return LocalRunner(timeout_s=timeout_s)

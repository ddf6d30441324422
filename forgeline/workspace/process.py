"""
Subprocess runner shared by git, linters, type-checkers and installers.

Every call carries its own timeout. Exit code 143 (SIGTERM) is what a
killed child reports, so it is treated as a timeout, not a failure.
"""

from __future__ import annotations

import os
import subprocess
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

TIMEOUT_EXIT_CODE = 143


class CommandTimeoutError(Exception):
    def __init__(self, cmd: list[str], timeout: float):
        super().__init__(f"Command timed out after {timeout:g}s: {' '.join(cmd)}")
        self.cmd = cmd
        self.timeout = timeout


@dataclass(frozen=True)
class CommandResult:
    cmd: list[str]
    exit_code: int
    stdout: str
    stderr: str
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout, self.stderr) if part.strip())

    def describe(self) -> str:
        if self.timed_out:
            return f"TIMEOUT: `{' '.join(self.cmd[:3])}` was killed before finishing (exit {self.exit_code})"
        return f"`{' '.join(self.cmd[:3])}` exited with code {self.exit_code}"


def run_command(
    cmd: list[str],
    cwd: Path,
    timeout: float = 60,
    env: dict[str, str] | None = None,
    raise_on_timeout: bool = False,
) -> CommandResult:
    """
    Run a command and capture output. Never raises on a non-zero exit.

    With raise_on_timeout, a timeout (or a child killed with exit 143)
    raises CommandTimeoutError instead of returning a timed-out result.
    """
    full_env = {**os.environ, **env} if env else None
    try:
        proc = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
            env=full_env,
        )
    except subprocess.TimeoutExpired as e:
        logger.warning(f"[PROCESS] Timeout after {timeout}s: {' '.join(cmd[:4])}")
        if raise_on_timeout:
            raise CommandTimeoutError(cmd, timeout) from e
        return CommandResult(
            cmd=cmd,
            exit_code=TIMEOUT_EXIT_CODE,
            stdout=_decode(e.stdout),
            stderr=_decode(e.stderr),
            timed_out=True,
        )
    except FileNotFoundError:
        logger.warning(f"[PROCESS] Executable not found: {cmd[0]}")
        return CommandResult(cmd=cmd, exit_code=127, stdout="", stderr=f"{cmd[0]}: command not found")

    if raise_on_timeout and proc.returncode == TIMEOUT_EXIT_CODE:
        raise CommandTimeoutError(cmd, timeout)
    return CommandResult(
        cmd=cmd,
        exit_code=proc.returncode,
        stdout=proc.stdout or "",
        stderr=proc.stderr or "",
        timed_out=proc.returncode == TIMEOUT_EXIT_CODE,
    )


def _decode(raw: bytes | str | None) -> str:
    if raw is None:
        return ""
    if isinstance(raw, bytes):
        return raw.decode("utf-8", errors="replace")
    return raw

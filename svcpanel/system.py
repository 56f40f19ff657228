from __future__ import annotations

import asyncio
import logging
import os
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence


EXTRA_BIN_PATHS = ("/usr/local/sbin", "/usr/sbin", "/sbin")

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    returncode: int
    stdout: str
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def text(self) -> str:
        return (self.stderr.strip() or self.stdout.strip())


def _find_command(name: str) -> str | None:
    path_entries = [entry for entry in os.environ.get("PATH", "").split(os.pathsep) if entry]
    for extra in EXTRA_BIN_PATHS:
        if extra not in path_entries:
            path_entries.append(extra)
    return shutil.which(name, path=os.pathsep.join(path_entries))


def _failure(command: Sequence[str], exc: OSError) -> CommandResult:
    if isinstance(exc, FileNotFoundError):
        return CommandResult(returncode=127, stdout="", stderr=f"command not found: {command[0]}")
    if isinstance(exc, PermissionError):
        return CommandResult(returncode=126, stdout="", stderr=f"permission denied: {command[0]}")
    return CommandResult(returncode=1, stdout="", stderr=f"{command[0]}: {exc}")


def _run(command: Sequence[str]) -> CommandResult:
    try:
        result = subprocess.run(
            command,
            check=False,
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
        return CommandResult(returncode=result.returncode, stdout=result.stdout, stderr=result.stderr)
    except OSError as exc:
        return _failure(command, exc)


async def run_async(command: Sequence[str]) -> CommandResult:
    """Run *command* without blocking the event loop and capture both streams."""

    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        return _failure(command, exc)
    stdout_bytes, stderr_bytes = await process.communicate()
    return CommandResult(
        returncode=process.returncode if process.returncode is not None else 1,
        stdout=stdout_bytes.decode("utf-8", "replace"),
        stderr=stderr_bytes.decode("utf-8", "replace"),
    )


def spawn_detached(command: Sequence[str]) -> CommandResult:
    try:
        subprocess.Popen(
            list(command),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
    except OSError as exc:
        return _failure(command, exc)
    return CommandResult(returncode=0, stdout="", stderr="")


class Host:
    """The local OS as seen by probes, control scripts and the UCI adapter.

    Everything that touches processes or the filesystem goes through one of
    these methods so a scripted host can replace it in tests.
    """

    async def run(self, command: Sequence[str]) -> CommandResult:
        result = await run_async(command)
        logger.debug("%s -> %s", " ".join(command), result.returncode)
        return result

    def spawn(self, command: Sequence[str]) -> CommandResult:
        logger.debug("spawn %s", " ".join(command))
        return spawn_detached(command)

    def exists(self, path: str | Path) -> bool:
        return Path(path).exists()

    def is_dir(self, path: str | Path) -> bool:
        return Path(path).is_dir()

    def which(self, name: str) -> str | None:
        return _find_command(name)

"""Adapter for the UCI configuration store.

The on-disk format under ``/etc/config`` belongs to ``uci`` and is never
parsed or written directly here; every read and write goes through the
``uci`` command line tool.
"""

from __future__ import annotations

import logging
import re
import shlex
from dataclasses import dataclass, field
from typing import Dict, List, Union

from svcpanel.system import CommandResult, Host


UciValue = Union[str, List[str]]

ANONYMOUS_NAME = re.compile(r"^cfg[0-9a-f]{6}$")

logger = logging.getLogger(__name__)


class UciError(RuntimeError):
    def __init__(self, command: list[str], result: CommandResult) -> None:
        self.command = command
        self.result = result
        detail = result.text() or f"exit code {result.returncode}"
        super().__init__(f"{' '.join(command)}: {detail}")


@dataclass
class UciSection:
    name: str
    type: str
    options: Dict[str, UciValue] = field(default_factory=dict)
    anonymous: bool = False

    def get(self, option: str, default: str | None = None) -> str | None:
        value = self.options.get(option)
        if value is None:
            return default
        if isinstance(value, list):
            return " ".join(value)
        return value


def _parse_value(raw: str) -> UciValue:
    try:
        tokens = shlex.split(raw)
    except ValueError:
        return raw.strip("'")
    if len(tokens) == 1:
        return tokens[0]
    if not tokens:
        return ""
    return tokens


def parse_show(config: str, text: str) -> Dict[str, UciSection]:
    sections: Dict[str, UciSection] = {}
    prefix = f"{config}."
    for line in text.splitlines():
        line = line.strip()
        if not line.startswith(prefix) or "=" not in line:
            continue
        key, raw = line.split("=", 1)
        parts = key.split(".", 2)
        if len(parts) == 2:
            name = parts[1]
            sections[name] = UciSection(
                name=name,
                type=raw.strip(),
                anonymous=bool(ANONYMOUS_NAME.match(name)),
            )
        elif len(parts) == 3:
            name, option = parts[1], parts[2]
            section = sections.get(name)
            if section is None:
                section = sections[name] = UciSection(name=name, type="", anonymous=bool(ANONYMOUS_NAME.match(name)))
            section.options[option] = _parse_value(raw)
    return sections


class UciStore:
    def __init__(self, host: Host | None = None, binary: str = "uci") -> None:
        self.host = host or Host()
        self.binary = binary

    async def _call(self, *args: str) -> CommandResult:
        command = [self.binary, *args]
        result = await self.host.run(command)
        if result.returncode != 0:
            raise UciError(command, result)
        return result

    async def load(self, config: str) -> Dict[str, UciSection]:
        result = await self._call("-q", "-X", "show", config)
        return parse_show(config, result.stdout)

    async def get(self, config: str, section: str, option: str) -> str | None:
        command = [self.binary, "-q", "get", f"{config}.{section}.{option}"]
        result = await self.host.run(command)
        if result.returncode != 0:
            return None
        return result.stdout.rstrip("\n")

    async def set(self, config: str, section: str, option: str, value: str) -> None:
        await self._call("set", f"{config}.{section}.{option}={value}")

    async def set_section(self, config: str, section: str, section_type: str) -> None:
        await self._call("set", f"{config}.{section}={section_type}")

    async def delete(self, config: str, section: str, option: str | None = None) -> None:
        target = f"{config}.{section}" if option is None else f"{config}.{section}.{option}"
        command = [self.binary, "-q", "delete", target]
        result = await self.host.run(command)
        # deleting an option that was never set is not an error
        if result.returncode != 0 and option is None:
            raise UciError(command, result)

    async def add(self, config: str, section_type: str) -> str:
        result = await self._call("add", config, section_type)
        return result.stdout.strip()

    async def commit(self, config: str) -> None:
        await self._call("commit", config)
        logger.info("Committed uci config %s", config)

    async def revert(self, config: str) -> None:
        """Drop changes staged for *config* that were never committed."""

        await self._call("revert", config)
        logger.info("Reverted staged changes to uci config %s", config)

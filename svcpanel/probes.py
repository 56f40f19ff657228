"""Read-only status probes.

Every probe answers a single question about installed or running state and
treats any execution failure as a negative answer. Text parsing lives in the
``parse_*`` helpers so it can be checked against recorded command output.
"""

from __future__ import annotations

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Dict, List, Mapping, Sequence

from svcpanel.poll import Patch, PollFn, Poller
from svcpanel.system import CommandResult, Host
from svcpanel.uci import UciSection


IPV4_PATTERN = re.compile(r"inet\s+(\d+\.\d+\.\d+\.\d+)")
ROUTE_DEVICE_PATTERN = re.compile(r"\bdev\s+(\S+)")
OWNER_PATTERN = re.compile(r"^\d+:\d+$")
AUTH_LINK_PATTERN = re.compile(r"(https://login\.tailscale\.com/a/[a-zA-Z0-9]+)")
PERMISSION_HINT = " (Check /usr/share/rpcd/acl.d/ permissions and restart rpcd)"

logger = logging.getLogger(__name__)


@dataclass
class ProbeResult:
    name: str
    result: CommandResult | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def stdout(self) -> str:
        return self.result.stdout if self.result else ""


@dataclass
class ServiceStatus:
    installed: bool
    running: bool
    details: Dict[str, Any] = field(default_factory=dict)
    diagnostics: List[ProbeResult] = field(default_factory=list)

    def poll_context(self) -> Dict[str, str]:
        context = {
            "installed": "1" if self.installed else "0",
            "running": "1" if self.running else "0",
        }
        for key, value in self.details.items():
            if isinstance(value, bool):
                context[key] = "1" if value else "0"
        return context


def parse_mount_table(text: str, path: str) -> bool:
    return path in text


def parse_ipv4(text: str) -> str | None:
    match = IPV4_PATTERN.search(text or "")
    return match.group(1) if match else None


def parse_route_device(text: str) -> str | None:
    match = ROUTE_DEVICE_PATTERN.search(text or "")
    return match.group(1) if match else None


def parse_owner(text: str) -> str | None:
    value = (text or "").strip()
    return value if OWNER_PATTERN.match(value) else None


def parse_auth_link(text: str) -> str | None:
    match = AUTH_LINK_PATTERN.search(text or "")
    return match.group(1) if match else None


async def _run_quiet(host: Host, command: Sequence[str]) -> CommandResult | None:
    try:
        return await host.run(command)
    except Exception as exc:
        logger.debug("Probe %s failed: %s", command[0], exc)
        return None


async def file_exists(host: Host, path: str) -> bool:
    try:
        return host.exists(path)
    except OSError as exc:
        logger.debug("stat %s failed: %s", path, exc)
        return False


async def mount_contains(host: Host, path: str, mount_cmd: str = "/bin/mount") -> bool:
    result = await _run_quiet(host, [mount_cmd])
    if result is None or result.returncode != 0:
        return False
    return parse_mount_table(result.stdout, path)


async def process_running(host: Host, pattern: str) -> bool:
    result = await _run_quiet(host, ["/usr/bin/pgrep", "-f", pattern])
    return result is not None and result.returncode == 0


async def script_succeeds(host: Host, script: str, action: str) -> bool:
    result = await _run_quiet(host, [script, action])
    return result is not None and result.returncode == 0


async def directory_owner(host: Host, path: str | None) -> str | None:
    if not path:
        return None
    try:
        if not host.is_dir(path):
            return None
    except OSError:
        return None
    result = await _run_quiet(host, ["stat", "-c", "%u:%g", path])
    if result is None or result.returncode != 0:
        return None
    return parse_owner(result.stdout)


async def interface_ipv4(host: Host, interface: str) -> str | None:
    result = await _run_quiet(host, ["/sbin/ip", "-4", "addr", "show", interface])
    if result is None or result.returncode != 0:
        return None
    return parse_ipv4(result.stdout)


async def default_route_device(host: Host) -> str | None:
    result = await _run_quiet(host, ["/sbin/ip", "-4", "route", "show", "default"])
    if result is None or result.returncode != 0:
        return None
    return parse_route_device(result.stdout)


async def capture(host: Host, name: str, command: Sequence[str]) -> ProbeResult:
    """Run a diagnostic probe and keep its failure reason for display."""

    try:
        result = await host.run(command)
    except Exception as exc:
        return ProbeResult(name=name, error=str(exc))
    if result.returncode in (126, 127):
        message = result.text() or f"exit code {result.returncode}"
        if "permission denied" in message.lower():
            message += PERMISSION_HINT
        return ProbeResult(name=name, result=result, error=message)
    return ProbeResult(name=name, result=result)


async def gather(*probes: Awaitable[Any]) -> list[Any]:
    return list(await asyncio.gather(*probes))


class ServiceStatusProvider(ABC):
    """Per-service adapter that turns probe output into a ``ServiceStatus``."""

    def __init__(self, host: Host) -> None:
        self.host = host

    @abstractmethod
    async def snapshot(self, record: Mapping[str, UciSection]) -> ServiceStatus:
        raise NotImplementedError

    def poll_tasks(self, context: Mapping[str, str]) -> Dict[str, PollFn]:
        return {}

    async def poll(self, context: Mapping[str, str]) -> Patch:
        poller = Poller()
        for name, fn in self.poll_tasks(context).items():
            poller.add(name, fn)
        return await poller.tick()

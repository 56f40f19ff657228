from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, Mapping

from svcpanel.system import CommandResult, Host


ACTIONS = frozenset(
    {
        "start",
        "stop",
        "restart",
        "enable",
        "disable",
        "install",
        "uninstall",
        "reinstall",
        "reset",
        "update",
        "check_update",
        "is_installed",
        "check_browser_root",
        "reclaim",
    }
)

DEFAULT_SUCCESS_MESSAGE = "Action completed successfully."

logger = logging.getLogger(__name__)


@dataclass
class ActionOutcome:
    action: str
    ok: bool
    message: str
    output: str = ""
    reload: bool = False
    reload_delay: float = 0.0
    resume_polling: bool = False
    show_output: bool = False
    returncode: int | None = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ControlScript:
    """A service's init script, invoked as ``<path> <action>``."""

    def __init__(self, path: str, actions: Iterable[str], host: Host | None = None) -> None:
        unknown = set(actions) - ACTIONS
        if unknown:
            raise ValueError(f"Unknown control actions: {', '.join(sorted(unknown))}")
        self.path = path
        self.actions = frozenset(actions)
        self.host = host or Host()

    def supports(self, action: str) -> bool:
        return action in self.actions

    async def run(self, action: str) -> CommandResult:
        if not self.supports(action):
            return CommandResult(returncode=1, stdout="", stderr=f"Unsupported action: {action}")
        result = await self.host.run([self.path, action])
        level = logging.INFO if result.returncode == 0 else logging.WARNING
        logger.log(level, "%s %s exited with %s", self.path, action, result.returncode)
        return result

    async def query(self, action: str) -> bool:
        result = await self.run(action)
        return result.returncode == 0

    def run_background(self, action: str) -> CommandResult:
        if not self.supports(action):
            return CommandResult(returncode=1, stdout="", stderr=f"Unsupported action: {action}")
        logger.info("%s %s started in background", self.path, action)
        return self.host.spawn([self.path, action])


@dataclass
class Dispatcher:
    script: ControlScript
    messages: Mapping[str, str] = field(default_factory=dict)
    non_disruptive: frozenset = frozenset()
    background: frozenset = frozenset()
    reload_delay: Mapping[str, float] = field(default_factory=dict)
    show_output: frozenset = frozenset()

    async def dispatch(self, action: str) -> ActionOutcome:
        if not self.script.supports(action):
            return ActionOutcome(action=action, ok=False, message=f"Unsupported action: {action}")
        try:
            if action in self.background:
                result = self.script.run_background(action)
            else:
                result = await self.script.run(action)
        except Exception as exc:
            logger.exception("Dispatch of %s %s failed", self.script.path, action)
            return ActionOutcome(action=action, ok=False, message=f"Error: {exc}")

        output = result.stdout.strip() or result.stderr.strip()
        if action in self.show_output:
            return ActionOutcome(
                action=action,
                ok=result.returncode == 0,
                message=self.messages.get(action, DEFAULT_SUCCESS_MESSAGE),
                output=output or "No output returned.",
                show_output=True,
                returncode=result.returncode,
            )
        if result.returncode != 0:
            detail = result.stderr.strip() or result.stdout.strip() or f"Unknown Error (exit code {result.returncode})"
            return ActionOutcome(
                action=action,
                ok=False,
                message=f"Action failed: {detail}",
                output=output,
                returncode=result.returncode,
            )
        resume = action in self.non_disruptive
        return ActionOutcome(
            action=action,
            ok=True,
            message=self.messages.get(action, DEFAULT_SUCCESS_MESSAGE),
            output=output,
            reload=not resume,
            reload_delay=self.reload_delay.get(action, 0.0) if not resume else 0.0,
            resume_polling=resume,
            returncode=result.returncode,
        )

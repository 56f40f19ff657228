from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, List, Mapping

from svcpanel.core import PathsConfig
from svcpanel.dispatch import ControlScript, Dispatcher
from svcpanel.forms import FormSchema
from svcpanel.probes import ProbeResult, ServiceStatus, ServiceStatusProvider
from svcpanel.system import Host


@dataclass
class InfoRow:
    label: str
    value: str
    kind: str = ""
    bind: str | None = None
    href: str | None = None
    preformatted: bool = False


@dataclass
class ServiceButton:
    action: str
    label: str
    style: str = "apply"
    disabled: bool = False
    title: str = ""
    confirm: str | None = None
    saves_form: bool = False
    bind: str | None = None


@dataclass
class ServiceView:
    status_text: str
    status_kind: str
    rows: List[InfoRow] = field(default_factory=list)
    buttons: List[ServiceButton] = field(default_factory=list)
    footer_buttons: List[ServiceButton] = field(default_factory=list)
    auth_link: str | None = None
    diagnostics: List[ProbeResult] = field(default_factory=list)
    polling: bool = False

    def offered_actions(self) -> list[str]:
        return [button.action for button in self.buttons + self.footer_buttons if not button.disabled]


@dataclass
class ServiceContext:
    host: Host
    script: ControlScript | None
    status: ServiceStatus


@dataclass(frozen=True)
class ServiceSpec:
    key: str
    name: str
    description: str
    config: str
    script: str | None
    actions: frozenset
    provider: Callable[[Host, ControlScript | None, PathsConfig], ServiceStatusProvider]
    build_schema: Callable[[ServiceContext], FormSchema]
    build_view: Callable[[ServiceContext], ServiceView]
    messages: Mapping[str, str] = field(default_factory=dict)
    non_disruptive: frozenset = frozenset()
    background: frozenset = frozenset()
    show_output: frozenset = frozenset()
    reload_delay: Mapping[str, float] = field(default_factory=dict)
    apply_action: str | None = None

    def control_script(self, host: Host, init_dir: str) -> ControlScript | None:
        if not self.script:
            return None
        return ControlScript(f"{init_dir.rstrip('/')}/{self.script}", self.actions, host)

    def dispatcher(self, script: ControlScript) -> Dispatcher:
        return Dispatcher(
            script=script,
            messages=self.messages,
            non_disruptive=self.non_disruptive,
            background=self.background,
            reload_delay=self.reload_delay,
            show_output=self.show_output,
        )

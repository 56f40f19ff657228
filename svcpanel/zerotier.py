from __future__ import annotations

from typing import Mapping

from svcpanel.core import PathsConfig
from svcpanel.dispatch import ControlScript
from svcpanel.forms import Field, FormSchema, Section, validate_network_id
from svcpanel.probes import ServiceStatus, ServiceStatusProvider, file_exists, process_running
from svcpanel.services import ServiceButton, ServiceContext, ServiceSpec, ServiceView
from svcpanel.system import Host
from svcpanel.uci import UciSection


PROCESS_PATTERN = "zerotier-one"


class ZeroTierStatus(ServiceStatusProvider):
    def __init__(self, host: Host, script: ControlScript | None) -> None:
        super().__init__(host)
        self.script = script

    async def snapshot(self, record: Mapping[str, UciSection]) -> ServiceStatus:
        installed = await file_exists(self.host, self.script.path) if self.script else False
        running = await process_running(self.host, PROCESS_PATTERN)
        networks = sum(1 for section in record.values() if section.type == "network")
        return ServiceStatus(installed=installed, running=running, details={"networks": networks})


def _provider(host: Host, script: ControlScript | None, paths: PathsConfig) -> ServiceStatusProvider:
    return ZeroTierStatus(host, script)


def build_schema(context: ServiceContext) -> FormSchema:
    return FormSchema(
        config="zerotier",
        title="ZeroTier",
        description=(
            "ZeroTier creates a virtual network between hosts. "
            "Join a network to enable private, encrypted connectivity."
        ),
        sections=[
            Section(
                name="global",
                type="zerotier",
                title="Global Settings",
                fields=[
                    Field("enabled", "Enabled", widget="flag", default="0", rmempty=False),
                    Field(
                        "port",
                        "Port",
                        datatype="port",
                        placeholder="9993",
                        description="ZeroTier listening port (default 9993). Set to 0 for random.",
                    ),
                    Field(
                        "secret",
                        "Client Secret",
                        widget="password",
                        description="Leave blank to generate a secret on first run.",
                    ),
                    Field(
                        "config_path",
                        "Persistent Config Path",
                        placeholder="/etc/zerotier",
                        description="Directory for persistent configuration (e.g. /etc/zerotier).",
                    ),
                    Field(
                        "copy_config_path",
                        "Copy Config",
                        widget="flag",
                        description="Copy configuration to memory to avoid flash writes.",
                    ),
                    Field(
                        "local_conf_path",
                        "Local Config File",
                        placeholder="/etc/zerotier.conf",
                        description="Path to local.conf file for advanced options.",
                    ),
                ],
            ),
            Section(
                name="network",
                type="network",
                title="ZeroTier Networks",
                description="Join one or more ZeroTier networks by entering their 16-digit Network ID.",
                kind="typed",
                addremove=True,
                fields=[
                    Field(
                        "id",
                        "Network ID",
                        rmempty=False,
                        validator=validate_network_id,
                        description="16-character Network ID from ZeroTier Central.",
                    ),
                    Field(
                        "allow_managed",
                        "Auto-Assign IP",
                        widget="flag",
                        default="1",
                        description="Allow ZeroTier to assign managed IP addresses.",
                    ),
                    Field(
                        "allow_global",
                        "Allow Global IPs",
                        widget="flag",
                        description="Allow setting global/public IP addresses.",
                    ),
                    Field(
                        "allow_default",
                        "Allow Default Route",
                        widget="flag",
                        description="Allow overriding the default route (Full Tunnel).",
                    ),
                    Field(
                        "allow_dns",
                        "Allow DNS",
                        widget="flag",
                        description="Allow accepting DNS configuration from the controller.",
                    ),
                ],
            ),
        ],
    )


def build_view(context: ServiceContext) -> ServiceView:
    status = context.status
    if not status.installed:
        status_text, status_kind = "Not Installed", "error"
    elif status.running:
        status_text, status_kind = "Running", "ok"
    else:
        status_text, status_kind = "Stopped", "error"

    buttons: list[ServiceButton] = []
    if status.installed:
        buttons.append(ServiceButton("start", "Start", style="apply", disabled=status.running))
        buttons.append(ServiceButton("stop", "Stop", style="reset", disabled=not status.running))
        buttons.append(ServiceButton("restart", "Restart", style="neutral"))
    return ServiceView(status_text=status_text, status_kind=status_kind, buttons=buttons)


SPEC = ServiceSpec(
    key="zerotier",
    name="ZeroTier",
    description="Virtual overlay network client.",
    config="zerotier",
    script="zerotier",
    actions=frozenset({"start", "stop", "restart", "enable", "disable"}),
    provider=_provider,
    build_schema=build_schema,
    build_view=build_view,
    messages={
        "start": "Service started.",
        "stop": "Service stopped.",
        "restart": "Service restarted.",
    },
    reload_delay={"start": 2, "restart": 2},
)

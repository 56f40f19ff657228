from __future__ import annotations

from typing import Mapping

from svcpanel.core import PathsConfig
from svcpanel.dispatch import ControlScript
from svcpanel.forms import Field, FormSchema, Section
from svcpanel.probes import ServiceStatus, ServiceStatusProvider, file_exists, gather, mount_contains
from svcpanel.services import ServiceButton, ServiceContext, ServiceSpec, ServiceView
from svcpanel.system import Host
from svcpanel.uci import UciSection


INSTALL_MARKER = "/mnt/sda1/.webapps/pairdrop.sqfs"
MOUNT_PATH = "/www/pairdrop"


class PairDropStatus(ServiceStatusProvider):
    async def snapshot(self, record: Mapping[str, UciSection]) -> ServiceStatus:
        installed, running = await gather(
            file_exists(self.host, INSTALL_MARKER),
            mount_contains(self.host, MOUNT_PATH),
        )
        return ServiceStatus(installed=installed, running=running)


def _provider(host: Host, script: ControlScript | None, paths: PathsConfig) -> ServiceStatusProvider:
    return PairDropStatus(host)


def build_schema(context: ServiceContext) -> FormSchema:
    return FormSchema(
        config="pairdrop",
        title="PairDrop Settings",
        description="Configure the PairDrop file sharing service.",
        sections=[
            Section(
                name="main",
                type="pairdrop",
                title="Configuration",
                fields=[
                    Field("enabled", "Enable Service", widget="flag", rmempty=False),
                    Field("port", "Port", datatype="port", default="3000"),
                    Field(
                        "node_version",
                        "Node.js Version",
                        description="Specify Node.js version (e.g., v20.10.0). Leave empty for default.",
                        placeholder="v20.10.0",
                    ),
                    Field(
                        "pairdrop_version",
                        "PairDrop Version",
                        description="Specify PairDrop version tag (e.g., v1.10.7). Leave empty for latest.",
                    ),
                ],
            )
        ],
    )


def build_view(context: ServiceContext) -> ServiceView:
    installed = context.status.installed
    running = context.status.running
    if installed:
        status_text = "Installed (Running)" if running else "Installed (Stopped)"
    else:
        status_text = "Not Installed"

    buttons: list[ServiceButton] = []
    if not installed:
        buttons.append(ServiceButton("install", "Install", style="action"))
    if installed and not running:
        buttons.append(ServiceButton("start", "Start", style="apply"))
    if running:
        buttons.append(ServiceButton("stop", "Stop", style="reset"))
        buttons.append(ServiceButton("restart", "Restart", style="neutral"))
    if installed:
        buttons.append(ServiceButton("reinstall", "Force Reinstall", style="negative"))
        buttons.append(ServiceButton("uninstall", "Uninstall", style="negative"))
    return ServiceView(
        status_text=status_text,
        status_kind="ok" if installed else "error",
        buttons=buttons,
    )


SPEC = ServiceSpec(
    key="pairdrop",
    name="PairDrop",
    description="Local file sharing relay in the browser.",
    config="pairdrop",
    script="pairdrop",
    actions=frozenset({"install", "start", "stop", "restart", "reinstall", "uninstall"}),
    provider=_provider,
    build_schema=build_schema,
    build_view=build_view,
)

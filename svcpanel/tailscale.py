from __future__ import annotations

from typing import List, Mapping

from markupsafe import escape

from svcpanel.core import PathsConfig
from svcpanel.dispatch import ControlScript
from svcpanel.forms import Field, FormSchema, Section
from svcpanel.probes import (
    ProbeResult,
    ServiceStatus,
    ServiceStatusProvider,
    capture,
    default_route_device,
    gather,
    parse_auth_link,
)
from svcpanel.services import InfoRow, ServiceButton, ServiceContext, ServiceSpec, ServiceView
from svcpanel.system import CommandResult, Host
from svcpanel.uci import UciSection


TAILSCALE_BIN = "/usr/sbin/tailscale"
ETHTOOL_BIN = "/usr/sbin/ethtool"
FALLBACK_WAN_DEVICE = "eth0"
STOPPED_TEXT = "Tailscale is stopped or not installed."


class TailscaleStatus(ServiceStatusProvider):
    async def _detect_wan(self) -> ProbeResult:
        device = await default_route_device(self.host)
        if device is None:
            return ProbeResult(name="Detect WAN", error="No default route")
        return ProbeResult(name="Detect WAN", result=CommandResult(returncode=0, stdout=device))

    async def snapshot(self, record: Mapping[str, UciSection]) -> ServiceStatus:
        status, address, wan = await gather(
            capture(self.host, "Tailscale Status", [TAILSCALE_BIN, "status"]),
            capture(self.host, "Tailscale IP", [TAILSCALE_BIN, "ip", "-4"]),
            self._detect_wan(),
        )
        if status.ok and status.stdout:
            status_text = status.stdout
        elif status.error:
            status_text = f"Error: {status.error}"
        else:
            status_text = STOPPED_TEXT

        ip = address.stdout.strip() if address.ok else ""
        running = bool(status.ok and status.result and status.result.returncode == 0)
        return ServiceStatus(
            installed=status.ok,
            running=running,
            details={
                "status_text": status_text,
                "ip": ip or "-",
                "auth_link": parse_auth_link(status_text),
                "wan_device": wan.stdout.strip() if wan.ok else FALLBACK_WAN_DEVICE,
            },
            diagnostics=[status, address, wan],
        )


def _provider(host: Host, script: ControlScript | None, paths: PathsConfig) -> ServiceStatusProvider:
    return TailscaleStatus(host)


def gro_commands(device: str, enabled: bool) -> List[List[str]]:
    if enabled:
        return [
            [ETHTOOL_BIN, "-K", device, "rx-gro-list", "off"],
            [ETHTOOL_BIN, "-K", device, "rx-udp-gro-forwarding", "on"],
        ]
    return [
        [ETHTOOL_BIN, "-K", device, "rx-gro-list", "on"],
        [ETHTOOL_BIN, "-K", device, "rx-udp-gro-forwarding", "off"],
    ]


def _gro_writer(host: Host, device: str):
    async def write(section: str, value: str) -> list[CommandResult]:
        return list(await gather(*(host.run(command) for command in gro_commands(device, value == "1"))))

    return write


def diagnostics_html(diagnostics: List[ProbeResult]) -> str:
    items = []
    for probe in diagnostics:
        if probe.ok:
            state = '<span class="state-ok">OK</span>'
            detail = "Success"
        else:
            state = '<span class="state-error">FAILED</span>'
            detail = escape(probe.error or "")
        items.append(f"<li>{escape(probe.name)}: {state} ({detail})</li>")
    return '<div class="alert-message warning"><strong>Diagnostic Log:</strong><ul>' + "".join(items) + "</ul></div>"


def build_schema(context: ServiceContext) -> FormSchema:
    wan_device = str(context.status.details.get("wan_device") or FALLBACK_WAN_DEVICE)
    perf_info = (
        '<div class="cbi-value-description">'
        "Optimize throughput on OpenWrt 24.10+ (Kernel 6.6). These settings enable UDP Generic Receive "
        "Offload (GRO) on your WAN interface."
        f"<br/><strong>Detected WAN Device: {escape(wan_device)}</strong></div>"
    )
    return FormSchema(
        config="tailscale",
        title="Tailscale",
        description="Configure the Tailscale coordination server connection.",
        sections=[
            Section(
                name="settings",
                type="settings",
                title="Settings",
                tabs=(
                    ("general", "General Settings"),
                    ("performance", "Performance (Kernel 6.6+)"),
                    ("diagnostics", "Diagnostics"),
                ),
                fields=[
                    Field(
                        "enable",
                        "Enable",
                        widget="flag",
                        rmempty=False,
                        tab="general",
                        description="Enable the Tailscale daemon.",
                    ),
                    Field(
                        "port",
                        "Port",
                        datatype="port",
                        placeholder="41641",
                        rmempty=False,
                        tab="general",
                        description="UDP port to listen on. Default: 41641",
                    ),
                    Field(
                        "fw_mode",
                        "Firewall Mode",
                        widget="list",
                        default="nftables",
                        choices=(("nftables", "nftables"), ("iptables", "iptables")),
                        tab="general",
                        description="Firewall configuration mode. OpenWrt 22.03+ usually requires nftables.",
                    ),
                    Field(
                        "state_file",
                        "State File",
                        default="/etc/tailscale/tailscaled.state",
                        tab="general",
                        description="Location of the Tailscale state file.",
                    ),
                    Field("log_stderr", "Log to Stderr", widget="flag", default="1", tab="general"),
                    Field("_perf_info", widget="dummy", default=perf_info, raw_html=True, tab="performance"),
                    Field(
                        "udp_gro_enable",
                        "Enable UDP GRO Forwarding",
                        widget="flag",
                        tab="performance",
                        description="Sets <code>rx-udp-gro-forwarding on</code> and <code>rx-gro-list off</code>.",
                        raw_html=True,
                        on_write=_gro_writer(context.host, wan_device),
                    ),
                    Field(
                        "_diag_log",
                        widget="dummy",
                        default=diagnostics_html(context.status.diagnostics),
                        raw_html=True,
                        tab="diagnostics",
                    ),
                ],
            )
        ],
    )


def build_view(context: ServiceContext) -> ServiceView:
    details = context.status.details
    status_text = str(details.get("status_text") or STOPPED_TEXT)
    return ServiceView(
        status_text="Running" if context.status.running else "Stopped",
        status_kind="ok" if context.status.running else "error",
        rows=[
            InfoRow("Tailscale IP", str(details.get("ip") or "-")),
            InfoRow("Status", status_text, preformatted=True),
        ],
        buttons=[ServiceButton("restart", "Restart", style="neutral")],
        auth_link=details.get("auth_link"),
        diagnostics=list(context.status.diagnostics),
    )


SPEC = ServiceSpec(
    key="tailscale",
    name="Tailscale",
    description="Mesh VPN client.",
    config="tailscale",
    script="tailscale",
    actions=frozenset({"start", "stop", "restart", "enable", "disable"}),
    provider=_provider,
    build_schema=build_schema,
    build_view=build_view,
    messages={"restart": "Service restarted."},
    reload_delay={"restart": 3},
    apply_action="restart",
)

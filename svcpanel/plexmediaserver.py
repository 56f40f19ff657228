from __future__ import annotations

from typing import Dict, Mapping

from svcpanel.core import PathsConfig
from svcpanel.dispatch import ControlScript
from svcpanel.forms import Field, FormSchema, Section
from svcpanel.poll import Patch, PollFn
from svcpanel.probes import (
    ServiceStatus,
    ServiceStatusProvider,
    directory_owner,
    gather,
    interface_ipv4,
    process_running,
    script_succeeds,
)
from svcpanel.services import InfoRow, ServiceButton, ServiceContext, ServiceSpec, ServiceView
from svcpanel.system import CommandResult, Host
from svcpanel.uci import UciSection


PROCESS_PATTERN = "Plex Media Server"
FALLBACK_LAN_IP = "192.168.1.1"
WEB_PORT = 32400
LOG_COMMAND = ["/sbin/logread", "-e", "plexmediaserver", "-l", "100"]

PATH_DEFAULTS = {
    "library_dir": "/.plex/Library",
    "application_support_dir": "/.plex/Library/Application Support",
    "compressed_archive_path": "/.plex/Library/Application/plexmediaserver.sqfs",
}

RECLAIM_CONFIRM = (
    "This will run chown -R on your entire Browser Root. "
    "This may take a while depending on file count. Continue?"
)
UPDATE_CONFIRM = "Are you sure you want to perform an update? This might take a while."
RESET_CONFIRM = "WARNING: This will wipe your Plex configuration! Are you sure?"


def owner_state(record: Mapping[str, UciSection], current_owner: str | None, root_exists: bool) -> Dict[str, object]:
    """Compare the browser root's owner with the configured run user and group.

    Neither side is changed here; a difference is only reported.
    """

    main = record.get("main")
    user = (main.get("run_user") if main else None) or "0"
    group = (main.get("run_group") if main else None) or "0"
    target = f"{user}:{group}"
    current = current_owner or "0:0"
    return {
        "current_owner": current,
        "target_owner": target,
        "owner_mismatch": root_exists and current != target,
        "root_user": user in {"0", "root"},
    }


class PlexStatus(ServiceStatusProvider):
    def __init__(self, host: Host, script: ControlScript | None, lan_interface: str = "br-lan") -> None:
        super().__init__(host)
        self.script = script
        self.lan_interface = lan_interface

    async def _query(self, action: str) -> bool:
        if self.script is None:
            return False
        return await script_succeeds(self.host, self.script.path, action)

    async def snapshot(self, record: Mapping[str, UciSection]) -> ServiceStatus:
        main = record.get("main")
        browser_root = main.get("browser_root") if main else None
        running, installed, root_exists, owner, lan_ip = await gather(
            process_running(self.host, PROCESS_PATTERN),
            self._query("is_installed"),
            self._query("check_browser_root"),
            directory_owner(self.host, browser_root),
            interface_ipv4(self.host, self.lan_interface),
        )
        details: Dict[str, object] = {
            "root_exists": root_exists,
            "version": (main.get("version") if main else None) or "-",
            "url": f"http://{lan_ip or FALLBACK_LAN_IP}:{WEB_PORT}/web",
        }
        details.update(owner_state(record, owner, root_exists))
        return ServiceStatus(installed=installed, running=running, details=details)

    def poll_tasks(self, context: Mapping[str, str]) -> Dict[str, PollFn]:
        tasks: Dict[str, PollFn] = {"log": self._poll_log}
        if context.get("installed") == "1" and context.get("root_exists") == "1":
            tasks["status"] = self._poll_status
        return tasks

    async def _poll_status(self) -> Patch:
        running = await process_running(self.host, PROCESS_PATTERN)
        return {
            "status": {"text": "Running" if running else "Stopped", "kind": "ok" if running else "error"},
            "btn-start": {"disabled": running},
            "btn-stop": {"disabled": not running},
        }

    async def _poll_log(self) -> Patch:
        result = await self.host.run(LOG_COMMAND)
        if result.returncode == 0 and result.stdout:
            return {"log": {"value": result.stdout}}
        return {}


def _provider(host: Host, script: ControlScript | None, paths: PathsConfig) -> ServiceStatusProvider:
    return PlexStatus(host, script, paths.lan_interface)


def autofill_paths(data: Dict[str, str]) -> None:
    root = (data.get("main.browser_root") or "").strip().rstrip("/")
    if not root:
        return
    for option, suffix in PATH_DEFAULTS.items():
        key = f"main.{option}"
        if key in data and not data[key].strip():
            data[key] = root + suffix


def _autostart_writer(script: ControlScript | None):
    async def write(section: str, value: str) -> list[CommandResult]:
        if script is None:
            return [CommandResult(returncode=1, stdout="", stderr="No control script available.")]
        if value == "1":
            return [await script.run("enable"), await script.run("start")]
        return [await script.run("disable"), await script.run("stop")]

    return write


def build_schema(context: ServiceContext) -> FormSchema:
    status = context.status
    root_exists = bool(status.details.get("root_exists"))

    reclaim = Field(
        "_do_reclaim",
        "Reclaim Ownership",
        widget="button",
        tab="paths",
        action="reclaim",
        button_label="Reclaim Now",
        confirm=RECLAIM_CONFIRM,
    )
    if status.details.get("root_user", True):
        reclaim.disabled = True
        reclaim.button_label = "Not Needed (Root)"
        reclaim.description = (
            "There is no point on using Reclaim if the user that runs Plex Media Server is root, "
            "since it has access to all files, but its internal library data will be owned by root."
        )
    else:
        reclaim.description = "Recursively changes ownership of the Browser Root to the configured User/Group."
        if not root_exists:
            reclaim.button_label = "Root Missing"
            reclaim.disabled = True

    update = Field(
        "_do_update",
        "Perform Update",
        widget="button",
        tab="update",
        action="update",
        button_label="Update Plex",
        button_style="action",
        description="Downloads and repacks the latest version. This may take several minutes.",
        confirm=UPDATE_CONFIRM,
    )
    if not status.installed:
        update.button_style = "save"
        update.description = "Plex is NOT installed. Click here to download and install it."

    general = [
        Field(
            "enabled",
            "Enable Autostart",
            widget="flag",
            rmempty=False,
            tab="general",
            description="Enables the service to start automatically on boot.",
            on_write=_autostart_writer(context.script),
        ),
        Field(
            "run_user",
            "Run as User (ID)",
            tab="general",
            datatype="uinteger",
            placeholder="0",
            description="The user ID to run Plex as. Set to 0 for root.",
        ),
        Field(
            "run_group",
            "Run as Group (ID)",
            tab="general",
            datatype="uinteger",
            placeholder="0",
            description="The group ID to run Plex as. Set to 0 for root.",
        ),
        Field(
            "claim_code",
            "Plex Claim Code",
            widget="password",
            tab="general",
            placeholder="claim-xxxxxxxxxxxxxxxxxxxx",
            description=(
                'Optional. Use a claim code from <a href="https://plex.tv/claim" target="_blank">plex.tv/claim</a>. '
                "Required for first run only."
            ),
            raw_html=True,
        ),
        Field(
            "force_version",
            "Force Specific Version",
            tab="general",
            description=(
                "Manually specify a version folder name to use (found in tmp directory). "
                "Leave empty to auto-detect highest version."
            ),
        ),
    ]
    paths = [
        Field(
            "browser_root",
            "Browser Root",
            tab="paths",
            placeholder="/mnt/sda1",
            description="Mountpoint of the USB HDD containing the Plex library. Leave empty to auto-detect.",
        ),
        Field(
            "library_dir",
            "Library Directory",
            tab="paths",
            description="Path to the main Plex library data. Defaults to the Browser Root path appended with /.plex/Library.",
        ),
        Field(
            "application_support_dir",
            "Application Support Dir",
            tab="paths",
            description="Where metadata is stored. Defaults to the Library Directory path appended with /Application Support.",
        ),
        Field(
            "compressed_archive_path",
            "Compressed Archive Path",
            tab="paths",
            description=(
                "Location of plexmediaserver.sqfs or .txz. Defaults to the Library Directory path "
                "appended with /Application/plexmediaserver.sqfs."
            ),
        ),
        reclaim,
    ]
    maintenance = [
        Field(
            "force_update_download_url",
            "Custom Update URL",
            tab="update",
            description="Override the automatic download URL for Plex updates.",
        ),
        Field(
            "_check_update",
            "Check for Updates",
            widget="button",
            tab="update",
            action="check_update",
            button_label="Check Now",
        ),
        update,
        Field(
            "_do_reset",
            "Reset Config",
            widget="button",
            tab="update",
            action="reset",
            button_label="Wipe Config",
            button_style="reset",
            description="WARNING: Wipes the Plex Media Server config and regenerates it from scratch.",
            confirm=RESET_CONFIRM,
        ),
    ]
    log = [Field("_log", widget="textarea", tab="log", rows=20, default="Loading logs...", bind="log")]

    return FormSchema(
        config="plexmediaserver",
        title="Plex Media Server",
        description="Configuration and status monitoring for the Plex Media Server.",
        sections=[
            Section(
                name="main",
                type="plexmediaserver",
                title="Settings",
                fields=general + paths + maintenance + log,
                tabs=(
                    ("general", "General Settings"),
                    ("paths", "Storage Paths"),
                    ("update", "Updates & Maintenance"),
                    ("log", "Log"),
                ),
            )
        ],
        prepare=autofill_paths,
    )


def build_view(context: ServiceContext) -> ServiceView:
    status = context.status
    details = status.details
    root_exists = bool(details.get("root_exists"))

    if not status.installed:
        status_text, status_kind = "Not Installed - Please Run Update", "warning"
    elif not root_exists:
        status_text, status_kind = "Error: Browser Root directory not found. Please mount your drive.", "error"
    elif status.running:
        status_text, status_kind = "Running", "ok"
    else:
        status_text, status_kind = "Stopped", "error"

    if not root_exists:
        owner_row = InfoRow("Permissions", "-")
    elif details.get("owner_mismatch"):
        owner_row = InfoRow(
            "Permissions",
            f"Mismatch! Root is owned by {details['current_owner']}, configured for {details['target_owner']}",
            kind="warning",
        )
    else:
        owner_row = InfoRow("Permissions", f"Correct ({details['current_owner']})", kind="ok")

    url = str(details.get("url", ""))
    locked = not status.installed or not root_exists
    return ServiceView(
        status_text=status_text,
        status_kind=status_kind,
        rows=[
            owner_row,
            InfoRow("Version", str(details.get("version", "-")), kind="info"),
            InfoRow("Web Interface", url, href=url),
        ],
        footer_buttons=[
            ServiceButton(
                "stop",
                "Stop",
                style="negative",
                title="Stop Service",
                disabled=locked or not status.running,
                saves_form=True,
                bind="btn-stop",
            ),
            ServiceButton(
                "start",
                "Start",
                style="apply",
                title="Start Service",
                disabled=locked or status.running,
                saves_form=True,
                bind="btn-start",
            ),
            ServiceButton(
                "restart",
                "Save & Restart",
                style="positive",
                title="Save & Restart",
                disabled=locked,
                saves_form=True,
                bind="btn-restart",
            ),
        ],
        polling=True,
    )


SPEC = ServiceSpec(
    key="plexmediaserver",
    name="Plex Media Server",
    description="Media server for libraries on an attached drive.",
    config="plexmediaserver",
    script="plexmediaserver",
    actions=frozenset(
        {
            "start",
            "stop",
            "restart",
            "enable",
            "disable",
            "reclaim",
            "check_update",
            "update",
            "reset",
            "is_installed",
            "check_browser_root",
        }
    ),
    provider=_provider,
    build_schema=build_schema,
    build_view=build_view,
    messages={
        "start": "Service started.",
        "stop": "Service stopped.",
        "restart": "Service restarted.",
        "reclaim": "Ownership reclaimed recursively.",
        "enable": "Command executed successfully.",
        "disable": "Command executed successfully.",
        "check_update": "Update Check Result",
        "update": "Update started in background. Please wait...",
        "reset": "Command executed successfully.",
    },
    non_disruptive=frozenset({"stop", "reclaim"}),
    background=frozenset({"update"}),
    show_output=frozenset({"check_update"}),
    reload_delay={"start": 3, "restart": 3, "enable": 3, "disable": 3, "reset": 3, "update": 15},
)

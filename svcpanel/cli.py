from __future__ import annotations

import argparse
import asyncio
import json
import os
from pathlib import Path

import uvicorn

from svcpanel.core import DEFAULT_CONFIG_PATH, Config, config_to_toml, load_config, save_config
from svcpanel.dispatch import ActionOutcome
from svcpanel.log_setup import setup_logging
from svcpanel.service_manager import ServiceManager, get_service_spec, list_service_keys


def _default_config_path() -> Path:
    env_path = os.getenv("SVCPANEL_CONFIG_PATH")
    return Path(env_path) if env_path else DEFAULT_CONFIG_PATH


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="svcpanel")
    parser.add_argument(
        "--config",
        type=Path,
        default=_default_config_path(),
        help="Path to the panel config file.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init", help="Initialize a default config.")
    init_parser.add_argument("--force", action="store_true", help="Overwrite if exists.")

    subparsers.add_parser("show", help="Show the panel config.")

    services_parser = subparsers.add_parser("services", help="Inspect and control managed services.")
    services_sub = services_parser.add_subparsers(dest="services_command", required=True)
    services_sub.add_parser("list", help="List services with their state.")

    status_parser = services_sub.add_parser("status", help="Show the status of one service.")
    status_parser.add_argument("key", choices=list_service_keys())

    action_parser = services_sub.add_parser("action", help="Run a control script action.")
    action_parser.add_argument("key", choices=list_service_keys())
    action_parser.add_argument("action")

    get_parser = services_sub.add_parser("get", help="Show the service's UCI settings.")
    get_parser.add_argument("key", choices=list_service_keys())

    set_parser = services_sub.add_parser("set", help="Validate and save one UCI option.")
    set_parser.add_argument("key", choices=list_service_keys())
    set_parser.add_argument("section")
    set_parser.add_argument("option")
    set_parser.add_argument("value")

    watch_parser = services_sub.add_parser("watch", help="Print live status updates.")
    watch_parser.add_argument("key", choices=list_service_keys())
    watch_parser.add_argument("--count", type=int, default=None, help="Stop after N refreshes.")

    web_parser = subparsers.add_parser("web", help="Run the web panel.")
    web_parser.add_argument("--host", default=None)
    web_parser.add_argument("--port", type=int, default=None)

    return parser.parse_args(argv)


def _cmd_init(path: Path, force: bool) -> int:
    if path.exists() and not force:
        print(f"Config already exists at {path}. Use --force to overwrite.")
        return 1
    config = Config()
    save_config(config, path)
    print(f"Initialized config at {path}.")
    return 0


def _cmd_show(path: Path) -> int:
    config = load_config(path)
    print(config_to_toml(config).rstrip())
    return 0


def _print_outcome(outcome: ActionOutcome) -> int:
    print(outcome.message)
    if outcome.output and (outcome.show_output or not outcome.ok):
        print(outcome.output.rstrip())
    return 0 if outcome.ok else 1


async def _cmd_services_list(manager: ServiceManager) -> int:
    for info in await manager.list_services():
        installed = "installed" if info.installed else "not installed"
        print(f"{info.key}: {info.status_text} ({installed})")
    return 0


async def _cmd_services_status(manager: ServiceManager, key: str) -> int:
    spec = get_service_spec(key)
    page = await manager.page(key)
    view = page.view
    lines = [
        f"Name: {spec.name}",
        f"Status: {view.status_text}",
        f"Installed: {page.context.status.installed}",
        f"Running: {page.context.status.running}",
    ]
    for row in view.rows:
        lines.append(f"{row.label}: {row.value}")
    if view.auth_link:
        lines.append(f"Auth Required: {view.auth_link}")
    for probe in view.diagnostics:
        lines.append(f"{probe.name}: {'OK' if probe.ok else 'FAILED (' + (probe.error or '') + ')'}")
    actions = view.offered_actions()
    if actions:
        lines.append(f"Actions: {', '.join(actions)}")
    print("\n".join(lines))
    return 0


async def _cmd_services_get(manager: ServiceManager, key: str) -> int:
    values = await manager.values(key)
    for section, options in values.items():
        for option, value in options.items():
            print(f"{section}.{option}={value}")
    return 0


async def _cmd_services_set(manager: ServiceManager, key: str, section: str, option: str, value: str) -> int:
    outcome = await manager.set_option(key, section, option, value)
    print(outcome.result.summary())
    if outcome.action is not None:
        _print_outcome(outcome.action)
    return 0 if outcome.ok else 1


async def _cmd_services_watch(manager: ServiceManager, key: str, count: int | None) -> int:
    status = await manager.status(key)
    poller = manager.poller(key, status.poll_context())
    if not poller.tasks:
        print(f"{key} has no live status updates.")
        return 1
    stop = asyncio.Event()

    def _print_patch(patch) -> None:
        print(json.dumps(patch, sort_keys=True), flush=True)

    await poller.run(_print_patch, stop, max_ticks=count)
    return 0


def _cmd_web(config: Config, path: Path, host: str | None, port: int | None) -> int:
    os.environ["SVCPANEL_CONFIG_PATH"] = str(path)
    uvicorn.run(
        "svcpanel.web:app",
        host=host or config.web.host,
        port=port or config.web.port,
        log_config=None,
    )
    return 0


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    if os.getenv("SVCPANEL_ALLOW_NON_ROOT") != "1" and os.geteuid() != 0:
        print("svcpanel must be run as root. Try: sudo svcpanel")
        return 1
    path = args.config

    if args.command == "init":
        return _cmd_init(path, args.force)
    if args.command == "show":
        return _cmd_show(path)

    config = load_config(path)
    setup_logging(config.logging)

    if args.command == "web":
        return _cmd_web(config, path, args.host, args.port)
    if args.command == "services":
        manager = ServiceManager(config)
        if args.services_command == "list":
            return asyncio.run(_cmd_services_list(manager))
        if args.services_command == "status":
            return asyncio.run(_cmd_services_status(manager, args.key))
        if args.services_command == "action":
            return _print_outcome(asyncio.run(manager.run_action(args.key, args.action)))
        if args.services_command == "get":
            return asyncio.run(_cmd_services_get(manager, args.key))
        if args.services_command == "set":
            return asyncio.run(_cmd_services_set(manager, args.key, args.section, args.option, args.value))
        if args.services_command == "watch":
            return asyncio.run(_cmd_services_watch(manager, args.key, args.count))

    raise SystemExit("Unknown command")


if __name__ == "__main__":
    raise SystemExit(main())

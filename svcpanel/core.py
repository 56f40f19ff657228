from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
import tempfile
try:
    import tomllib
except ModuleNotFoundError:  # Python < 3.11
    import tomli as tomllib
from typing import Any, Dict

import tomli_w


DEFAULT_CONFIG_PATH = Path("/etc/svcpanel.toml")


@dataclass
class WebConfig:
    host: str = "0.0.0.0"
    port: int = 8088
    poll_interval: int = 5

    def to_dict(self) -> Dict[str, Any]:
        return {"host": self.host, "port": self.port, "poll_interval": self.poll_interval}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WebConfig":
        return cls(
            host=str(data.get("host", "0.0.0.0")),
            port=int(data.get("port", 8088)),
            poll_interval=max(int(data.get("poll_interval", 5)), 1),
        )


@dataclass
class PathsConfig:
    uci: str = "uci"
    init_dir: str = "/etc/init.d"
    lan_interface: str = "br-lan"

    def to_dict(self) -> Dict[str, Any]:
        return {"uci": self.uci, "init_dir": self.init_dir, "lan_interface": self.lan_interface}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PathsConfig":
        return cls(
            uci=str(data.get("uci", "uci")),
            init_dir=str(data.get("init_dir", "/etc/init.d")),
            lan_interface=str(data.get("lan_interface", "br-lan")),
        )


@dataclass
class LoggingConfig:
    level: str = "INFO"
    file: str | None = None
    max_bytes: int = 1024 * 1024
    backups: int = 2

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "level": self.level,
            "max_bytes": self.max_bytes,
            "backups": self.backups,
        }
        if self.file:
            payload["file"] = self.file
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LoggingConfig":
        return cls(
            level=str(data.get("level", "INFO")),
            file=str(data.get("file")) if data.get("file") else None,
            max_bytes=int(data.get("max_bytes", 1024 * 1024)),
            backups=int(data.get("backups", 2)),
        )


@dataclass
class Config:
    web: WebConfig = field(default_factory=WebConfig)
    paths: PathsConfig = field(default_factory=PathsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "web": self.web.to_dict(),
            "paths": self.paths.to_dict(),
            "logging": self.logging.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        return cls(
            web=WebConfig.from_dict(data.get("web", {})),
            paths=PathsConfig.from_dict(data.get("paths", {})),
            logging=LoggingConfig.from_dict(data.get("logging", {})),
        )


def load_config(path: Path = DEFAULT_CONFIG_PATH) -> Config:
    path = Path(path)
    if not path.exists():
        return Config()
    with path.open("rb") as handle:
        payload = tomllib.load(handle)
    return Config.from_dict(payload)


def _serialize_config(config: Config) -> str:
    return tomli_w.dumps(config.to_dict())


def save_config(config: Config, path: Path = DEFAULT_CONFIG_PATH) -> bool:
    path = Path(path)
    content = _serialize_config(config)
    if path.exists():
        existing = path.read_text(encoding="utf-8")
        if existing == content:
            return False
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile("w", delete=False, dir=path.parent, encoding="utf-8") as handle:
        handle.write(content)
        temp_name = handle.name
    Path(temp_name).replace(path)
    return True


def config_to_toml(config: Config) -> str:
    return _serialize_config(config)

"""Deploy configuration loader for jailship."""

import re
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from jailship.errors import ConfigError
from jailship.models import (
    AccessoryConfig,
    AppJailConfig,
    DeployConfig,
    HealthCheckConfig,
    ReleaseConfig,
    ServerConfig,
)
from jailship.services.accessories import SUPPORTED_ACCESSORY_TYPES

APP_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_]*$")
SUPPORTED_BUILDERS = ("remote", "local")


class ConfigLoader:
    """Loads and validates the YAML deploy configuration."""

    SUPPORTED_KEYS = {
        "app",
        "server",
        "domain",
        "app_jail",
        "release",
        "health_check",
        "accessories",
        "env",
    }
    SERVER_KEYS = {"host", "user", "port"}
    APP_JAIL_KEYS = {"base_path", "freebsd_version", "port"}
    RELEASE_KEYS = {
        "builder",
        "prepare_commands",
        "build_commands",
        "build_env",
        "path",
        "start_command",
        "migrate_command",
        "log_path",
    }
    HEALTH_CHECK_KEYS = {"path", "attempts", "interval"}
    ACCESSORY_KEYS = {"type", "version", "volume", "port", "database", "user", "password"}

    def load(self, config_path: str) -> DeployConfig:
        path = Path(config_path)
        if not path.exists():
            raise ConfigError(f"Config file not found: {config_path}")

        try:
            parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (yaml.YAMLError, OSError) as exc:
            raise ConfigError(f"Invalid config file '{config_path}': {exc}") from exc

        if not isinstance(parsed, dict):
            raise ConfigError("Config file must contain a YAML mapping at the root.")

        return self.build(parsed)

    def build(self, raw: Dict[str, Any]) -> DeployConfig:
        self._reject_unknown(raw, self.SUPPORTED_KEYS, "")

        app = str(self._require(raw, "app", ""))
        if not APP_NAME_PATTERN.match(app):
            raise ConfigError(
                f"Invalid app name '{app}'. Use lowercase letters, digits and underscores."
            )

        domain = raw.get("domain")
        return DeployConfig(
            app=app,
            server=self._server(self._section(raw, "server", required=True)),
            app_jail=self._app_jail(self._section(raw, "app_jail", required=True)),
            domain=str(domain) if domain else None,
            release=self._release(self._section(raw, "release")),
            health_check=self._health_check(self._section(raw, "health_check")),
            accessories=self._accessories(self._section(raw, "accessories")),
            env=self._string_map(raw.get("env"), "env"),
        )

    def _server(self, raw: Dict[str, Any]) -> ServerConfig:
        self._reject_unknown(raw, self.SERVER_KEYS, "server")
        return ServerConfig(
            host=str(self._require(raw, "host", "server")),
            user=str(raw.get("user", "root")),
            port=self._int(raw.get("port", 22), "server.port"),
        )

    def _app_jail(self, raw: Dict[str, Any]) -> AppJailConfig:
        self._reject_unknown(raw, self.APP_JAIL_KEYS, "app_jail")
        base_path = str(self._require(raw, "base_path", "app_jail")).rstrip("/")
        if not base_path.startswith("/"):
            raise ConfigError(f"app_jail.base_path must be an absolute path (got: {base_path})")
        return AppJailConfig(
            base_path=base_path,
            freebsd_version=str(self._require(raw, "freebsd_version", "app_jail")),
            port=self._int(raw.get("port", 4000), "app_jail.port"),
        )

    def _release(self, raw: Dict[str, Any]) -> ReleaseConfig:
        self._reject_unknown(raw, self.RELEASE_KEYS, "release")
        values: Dict[str, Any] = {}

        if "builder" in raw:
            builder = str(raw["builder"])
            if builder not in SUPPORTED_BUILDERS:
                supported = ", ".join(SUPPORTED_BUILDERS)
                raise ConfigError(f"release.builder must be one of: {supported} (got: {builder})")
            values["builder"] = builder

        for key in ("prepare_commands", "build_commands"):
            if key in raw:
                values[key] = self._commands(raw[key], f"release.{key}")
        if "build_env" in raw:
            values["build_env"] = self._string_map(raw["build_env"], "release.build_env")
        for key in ("path", "start_command", "migrate_command", "log_path"):
            if key in raw:
                values[key] = str(raw[key])

        return replace(ReleaseConfig(), **values)

    def _health_check(self, raw: Dict[str, Any]) -> HealthCheckConfig:
        self._reject_unknown(raw, self.HEALTH_CHECK_KEYS, "health_check")
        attempts = self._int(raw.get("attempts", 10), "health_check.attempts")
        if attempts < 1:
            raise ConfigError("health_check.attempts must be at least 1.")

        try:
            interval = float(raw.get("interval", 2.0))
        except (TypeError, ValueError) as exc:
            raise ConfigError("health_check.interval must be a number of seconds.") from exc
        if interval < 0:
            raise ConfigError("health_check.interval must not be negative.")

        return HealthCheckConfig(path=str(raw.get("path", "/")), attempts=attempts, interval=interval)

    def _accessories(self, raw: Dict[str, Any]) -> List[AccessoryConfig]:
        accessories = []
        for name, options in raw.items():
            parent = f"accessories.{name}"
            if not isinstance(options, dict):
                raise ConfigError(f"{parent} must be a mapping.")
            self._reject_unknown(options, self.ACCESSORY_KEYS, parent)

            accessory_type = str(self._require(options, "type", parent))
            if accessory_type not in SUPPORTED_ACCESSORY_TYPES:
                supported = ", ".join(sorted(SUPPORTED_ACCESSORY_TYPES))
                raise ConfigError(f"Unsupported type '{accessory_type}' for {parent}. Supported: {supported}")

            accessory = AccessoryConfig(
                name=str(name),
                type=accessory_type,
                version=str(self._require(options, "version", parent)),
                volume=str(self._require(options, "volume", parent)),
                port=self._int(options.get("port", 5432), f"{parent}.port"),
                database=self._optional_str(options.get("database")),
                user=self._optional_str(options.get("user")),
                password=self._optional_str(options.get("password")),
            )
            accessory.volume_paths()
            accessories.append(accessory)
        return accessories

    @staticmethod
    def _section(raw: Dict[str, Any], key: str, required: bool = False) -> Dict[str, Any]:
        value = raw.get(key)
        if value is None:
            if required:
                raise ConfigError(f"Missing required key: {key}")
            return {}
        if not isinstance(value, dict):
            raise ConfigError(f"{key} must be a mapping.")
        return value

    @staticmethod
    def _require(raw: Dict[str, Any], key: str, parent: str) -> Any:
        value = raw.get(key)
        if value is None or value == "":
            path = f"{parent}.{key}" if parent else key
            raise ConfigError(f"Missing required key: {path}")
        return value

    @staticmethod
    def _reject_unknown(raw: Dict[str, Any], supported, parent: str):
        unknown = sorted(str(key) for key in set(raw.keys()) - supported)
        if unknown:
            prefix = f"{parent}." if parent else ""
            unknown_list = ", ".join(f"{prefix}{key}" for key in unknown)
            raise ConfigError(f"Unknown configuration keys: {unknown_list}")

    @staticmethod
    def _int(value: Any, path: str) -> int:
        if isinstance(value, bool):
            raise ConfigError(f"{path} must be an integer.")
        try:
            return int(value)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"{path} must be an integer.") from exc

    @staticmethod
    def _optional_str(value: Any) -> Optional[str]:
        return None if value is None else str(value)

    @staticmethod
    def _string_map(value: Any, path: str) -> Dict[str, str]:
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise ConfigError(f"{path} must be a mapping.")
        return {str(key): str(item) for key, item in value.items()}

    @staticmethod
    def _commands(value: Any, path: str):
        if not isinstance(value, list):
            raise ConfigError(f"{path} must be a list of commands.")
        commands = []
        for entry in value:
            if isinstance(entry, str):
                entry = entry.split()
            if not isinstance(entry, list) or not entry:
                raise ConfigError(f"{path} entries must be non-empty argument lists.")
            commands.append(tuple(str(arg) for arg in entry))
        return tuple(commands)

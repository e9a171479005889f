"""Shared domain models for jailship."""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, List, Optional, Tuple

from jailship.errors import ConfigError


class Slot(str, Enum):
    """One of the two rotating jail identities."""

    BLUE = "blue"
    GREEN = "green"

    @property
    def other(self) -> "Slot":
        return Slot.GREEN if self is Slot.BLUE else Slot.BLUE


@dataclass(frozen=True)
class NetworkTopology:
    """Private network layout on the jail host."""

    interface: str = "lo1"
    gateway: str = "10.0.0.1"
    subnet: str = "10.0.0.0/24"
    blue_address: str = "10.0.0.2"
    green_address: str = "10.0.0.3"
    database_address: str = "10.0.0.4"
    build_address: str = "10.0.0.5"

    def slot_address(self, slot: Slot) -> str:
        return self.blue_address if slot is Slot.BLUE else self.green_address


@dataclass(frozen=True)
class CommandResult:
    command: str
    output: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass(frozen=True)
class ServerConfig:
    host: str
    user: str = "root"
    port: int = 22

    @property
    def target(self) -> str:
        return f"{self.user}@{self.host}:{self.port}"


@dataclass(frozen=True)
class AppJailConfig:
    base_path: str
    freebsd_version: str
    port: int = 4000


@dataclass(frozen=True)
class ReleaseConfig:
    """How the release is built and started inside the jail.

    `builder` is "remote" (the host's build jail) or "local" (this machine).
    """

    builder: str = "remote"
    prepare_commands: Tuple[Tuple[str, ...], ...] = (("mix", "assets.deploy"),)
    build_commands: Tuple[Tuple[str, ...], ...] = (("mix", "release", "--overwrite"),)
    build_env: Dict[str, str] = field(default_factory=lambda: {"MIX_ENV": "prod"})
    path: str = "_build/prod/rel/{app}"
    start_command: str = "bin/{app} daemon"
    migrate_command: str = 'bin/{app} eval "{module}.Release.migrate()"'
    log_path: str = "/app/tmp/log/{app}.log"


@dataclass(frozen=True)
class HealthCheckConfig:
    path: str = "/"
    attempts: int = 10
    interval: float = 2.0


@dataclass(frozen=True)
class AccessoryConfig:
    name: str
    type: str
    version: str
    volume: str
    port: int = 5432
    database: Optional[str] = None
    user: Optional[str] = None
    password: Optional[str] = None

    def volume_paths(self) -> Tuple[str, str]:
        host_path, separator, jail_path = self.volume.partition(":")
        if not separator or not host_path or not jail_path:
            raise ConfigError(
                f"Invalid volume format: {self.volume}. Expected 'host_path:jail_path'."
            )
        return host_path, jail_path


@dataclass(frozen=True)
class DeployConfig:
    app: str
    server: ServerConfig
    app_jail: AppJailConfig
    domain: Optional[str] = None
    release: ReleaseConfig = field(default_factory=ReleaseConfig)
    health_check: HealthCheckConfig = field(default_factory=HealthCheckConfig)
    accessories: List[AccessoryConfig] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)

    def postgresql_accessory(self) -> Optional[AccessoryConfig]:
        for accessory in self.accessories:
            if accessory.type == "postgresql":
                return accessory
        return None

    def with_env(self, env: Dict[str, str]) -> "DeployConfig":
        return replace(self, env=dict(env))

    def render_release_value(self, template: str) -> str:
        return template.format(app=self.app, module=app_module_name(self.app))


def app_module_name(app: str) -> str:
    """Converts `my_app` into the release module name `MyApp`."""
    return "".join(part.capitalize() for part in app.split("_"))


def unit_name(app: str, slot: Slot) -> str:
    return f"{app}_{slot.value}"

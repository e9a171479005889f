"""Accessory jail service (PostgreSQL) for jailship."""

from typing import Optional, Set

from jailship.constants import TEMPLATE_DIR
from jailship.errors import ConfigError
from jailship.models import AccessoryConfig, NetworkTopology
from jailship.shell import jexec, quote

SUPPORTED_ACCESSORY_TYPES = {"postgresql"}
LISTEN_ALL_EXPRESSION = "s/^#listen_addresses = .*/listen_addresses = '*'/"


def _sql_literal(value: str) -> str:
    return "'" + str(value).replace("'", "''") + "'"


def _sql_identifier(value: str) -> str:
    return '"' + str(value).replace('"', '""') + '"'


class AccessoryService:
    """Provisions and starts the database jail next to the application slots.

    Data lives on the host and is nullfs-mounted into the jail, so the jail
    itself can be recreated at any time without losing the cluster.
    """

    PG_BIN = "/usr/local/bin"

    def __init__(self, transport, logger, console, topology: Optional[NetworkTopology] = None):
        self.transport = transport
        self.logger = logger
        self.console = console
        self.topology = topology or NetworkTopology()

    @staticmethod
    def db_jail_name(config) -> str:
        return f"{config.app}_db"

    def jail_path(self, config) -> str:
        return f"{config.app_jail.base_path}/{self.db_jail_name(config)}"

    @staticmethod
    def data_dir(accessory: AccessoryConfig) -> str:
        _, jail_volume = accessory.volume_paths()
        return f"{jail_volume}/data{accessory.version}"

    @staticmethod
    def credentials(config, accessory: AccessoryConfig):
        database = accessory.database or f"{config.app}_prod"
        user = accessory.user or "app"
        password = accessory.password or "app"
        return database, user, password

    def setup(self, config):
        for accessory in config.accessories:
            if accessory.type not in SUPPORTED_ACCESSORY_TYPES:
                raise ConfigError(f"Unsupported accessory type '{accessory.type}' for {accessory.name}.")
            self.setup_postgresql(config, accessory)

    def setup_postgresql(self, config, accessory: AccessoryConfig):
        name = self.db_jail_name(config)
        jail_path = self.jail_path(config)
        host_volume, jail_volume = accessory.volume_paths()
        data_dir = self.data_dir(accessory)
        version = accessory.version

        self.console.print(f"[bold blue]Provisioning PostgreSQL accessory ({name})[/bold blue]")

        self.console.print(f"[blue]Creating host data directory {host_volume}...[/blue]")
        self.transport.run_checked(f"mkdir -p {quote(host_volume)}")

        if self.transport.run(f"test -d {quote(jail_path)}").ok:
            self.logger.info("Database jail %s already exists, skipping template clone.", name)
        else:
            template_path = f"{config.app_jail.base_path}/{TEMPLATE_DIR}/base"
            self.console.print(f"[blue]Creating database jail {name}...[/blue]")
            self.transport.run_checked(f"cp -a {quote(template_path)} {quote(jail_path)}")

        # Restarted below so the jail picks up a fresh resolv.conf.
        self._stop_jail(name, jail_path, jail_volume)
        self.transport.run_checked(f"cp /etc/resolv.conf {quote(jail_path + '/etc/resolv.conf')}")
        self.transport.run_checked(f"mkdir -p {quote(jail_path + jail_volume)}")

        self._start_jail(name, jail_path, host_volume, jail_volume)

        self.console.print(f"[blue]Installing postgresql{version}-server in {name}...[/blue]")
        self.transport.run_checked(
            f"jexec {name} pkg install -y postgresql{version}-server postgresql{version}-contrib",
            timeout=900,
        )

        self._init_cluster(name, data_dir)
        self._configure(name, data_dir)
        self._start_postgresql(name, data_dir)
        self._create_database(config, name, accessory)

        self.console.print("[green]PostgreSQL accessory provisioned successfully.[/green]")

    def ensure_running(self, config, accessory: AccessoryConfig) -> bool:
        """Starts the database jail and server when needed. Returns True if started."""
        name = self.db_jail_name(config)
        if name in self._active_jails():
            self.logger.info("Database jail %s already running.", name)
            return False

        self.console.print(f"[blue]Database jail {name} not running, starting...[/blue]")
        host_volume, jail_volume = accessory.volume_paths()
        self._start_jail(name, self.jail_path(config), host_volume, jail_volume)
        self._start_postgresql(name, self.data_dir(accessory))
        return True

    def _active_jails(self) -> Set[str]:
        result = self.transport.run("jls -q name 2>/dev/null || true")
        return {line.strip() for line in result.output.splitlines() if line.strip()}

    def _mount_points(self) -> Set[str]:
        result = self.transport.run("mount -p")
        points = set()
        for line in result.output.splitlines():
            fields = line.split()
            if len(fields) >= 2:
                points.add(fields[1])
        return points

    def _stop_jail(self, name: str, jail_path: str, jail_volume: str):
        mounted = self._mount_points()
        for mount_point in (f"{jail_path}/dev", f"{jail_path}{jail_volume}"):
            if mount_point in mounted:
                self.transport.run_checked(f"umount {quote(mount_point)}")
        if name in self._active_jails():
            self.transport.run_checked(f"jail -r {name}")

    def _start_jail(self, name: str, jail_path: str, host_volume: str, jail_volume: str):
        address = self.topology.database_address
        if name in self._active_jails():
            self.logger.info("Database jail %s already running.", name)
        else:
            self.console.print(f"[blue]Starting database jail {name} with IP {address}...[/blue]")
            self.transport.run_checked(
                f"jail -c name={name} path={quote(jail_path)} "
                f'ip4.addr="{self.topology.interface}|{address}/32" '
                f"host.hostname={name} allow.raw_sockets allow.sysvipc persist"
            )

        mounted = self._mount_points()
        devfs_point = f"{jail_path}/dev"
        if devfs_point not in mounted:
            self.transport.run_checked(f"mount -t devfs devfs {quote(devfs_point)}")

        volume_point = f"{jail_path}{jail_volume}"
        if volume_point not in mounted:
            self.console.print(f"[blue]Mounting {host_volume} -> {volume_point} via nullfs...[/blue]")
            self.transport.run_checked(f"mount_nullfs {quote(host_volume)} {quote(volume_point)}")

        self.console.print(f"[green]Database jail {name} started.[/green]")

    def _postgres(self, name: str, command: str) -> str:
        return f"jexec {name} su -m postgres -c {quote(command)}"

    def _init_cluster(self, name: str, data_dir: str):
        if self.transport.run(f"jexec {name} test -f {quote(data_dir + '/PG_VERSION')}").ok:
            self.logger.info("Database cluster in %s already exists, skipping initdb.", data_dir)
            return

        self.console.print("[blue]Initializing PostgreSQL database cluster...[/blue]")
        self.transport.run_checked(f"jexec {name} mkdir -p {quote(data_dir)}")
        self.transport.run_checked(f"jexec {name} chown postgres:postgres {quote(data_dir)}")
        self.transport.run_checked(
            self._postgres(name, f"{self.PG_BIN}/initdb -D {quote(data_dir)}"), timeout=300
        )

    def _configure(self, name: str, data_dir: str):
        conf = f"{data_dir}/postgresql.conf"
        if self.transport.run(f"jexec {name} grep -q '^listen_addresses' {quote(conf)}").ok:
            self.logger.info("listen_addresses already configured.")
        else:
            self.console.print(f"[blue]Configuring PostgreSQL to listen on {self.topology.database_address}...[/blue]")
            self.transport.run_checked(
                f"jexec {name} sed -i '' "
                f"{quote(LISTEN_ALL_EXPRESSION)} "
                f"{quote(conf)}"
            )

        hba = f"{data_dir}/pg_hba.conf"
        subnet = self.topology.subnet
        if self.transport.run(f"jexec {name} grep -qF {quote(subnet)} {quote(hba)}").ok:
            self.logger.info("pg_hba.conf already allows %s.", subnet)
        else:
            rule = f"host all all {subnet} md5"
            self.transport.run_checked(jexec(name, f"echo {quote(rule)} >> {quote(hba)}"))

    def _start_postgresql(self, name: str, data_dir: str):
        status = self.transport.run(self._postgres(name, f"{self.PG_BIN}/pg_ctl -D {quote(data_dir)} status"))
        if status.ok:
            self.logger.info("PostgreSQL already running in %s.", name)
            return

        self.console.print("[blue]Starting PostgreSQL...[/blue]")
        self.transport.run_checked(
            self._postgres(
                name,
                f"{self.PG_BIN}/pg_ctl -D {quote(data_dir)} -l {quote(data_dir + '/postgresql.log')} -w start",
            )
        )
        self.console.print("[green]PostgreSQL running.[/green]")

    def _create_database(self, config, name: str, accessory: AccessoryConfig):
        database, user, password = self.credentials(config, accessory)
        self.console.print(f"[blue]Creating database user '{user}' and database '{database}'...[/blue]")

        if not self._query_returns_row(name, f"SELECT 1 FROM pg_roles WHERE rolname = {_sql_literal(user)}"):
            self.transport.run_checked(self._postgres(name, f"createuser {quote(user)}"))

        self.transport.run_checked(
            self._postgres(
                name,
                "psql -c " + quote(f"ALTER ROLE {_sql_identifier(user)} WITH PASSWORD {_sql_literal(password)};"),
            )
        )

        if not self._query_returns_row(name, f"SELECT 1 FROM pg_database WHERE datname = {_sql_literal(database)}"):
            self.transport.run_checked(self._postgres(name, f"createdb -O {quote(user)} {quote(database)}"))

        self.console.print(f"[green]Database {database} ready.[/green]")

    def _query_returns_row(self, name: str, sql: str) -> bool:
        result = self.transport.run(self._postgres(name, f"psql -tAc {quote(sql)}"))
        return result.ok and result.output.strip() == "1"

"""Database migration service for jailship."""

from typing import Mapping

from jailship.constants import JAIL_APP_DIR
from jailship.models import Slot, unit_name
from jailship.shell import app_script, jexec


class MigrationService:
    """Runs the release's migrate command inside an application jail.

    Phoenix releases expose `MyApp.Release.migrate/0` by convention, so the
    default command evaluates that function through the release binary.
    """

    def __init__(self, transport, logger, console):
        self.transport = transport
        self.logger = logger
        self.console = console

    @staticmethod
    def required(config) -> bool:
        return config.postgresql_accessory() is not None

    def command(self, config, slot: Slot, env: Mapping[str, str]) -> str:
        migrate = config.render_release_value(config.release.migrate_command)
        return jexec(unit_name(config.app, slot), app_script(migrate, env, JAIL_APP_DIR))

    def run(self, config, slot: Slot, env: Mapping[str, str]) -> bool:
        if not self.required(config):
            self.logger.info("No database accessory configured, skipping migrations.")
            return False

        self.console.print(f"[blue]Running migrations in jail {unit_name(config.app, slot)}...[/blue]")
        self.transport.run_checked(self.command(config, slot, env), timeout=600)
        self.console.print("[green]Migrations completed successfully.[/green]")
        return True

"""Blue/green jail slot lifecycle service for jailship."""

from typing import List, Mapping, Optional, Set, Tuple

from jailship.constants import JAIL_APP_DIR, TEMPLATE_DIR
from jailship.errors import JailshipError
from jailship.models import NetworkTopology, Slot, unit_name
from jailship.shell import app_script, jexec, quote


class SlotManager:
    """Names, probes and drives the two application jails of one app.

    Each mutating operation checks the remote state first (`exists`,
    `list_active`) so that a deploy interrupted half way can simply be run
    again and converge to the same end state.
    """

    def __init__(self, transport, config, logger, console, topology: Optional[NetworkTopology] = None):
        self.transport = transport
        self.config = config
        self.logger = logger
        self.console = console
        self.topology = topology or NetworkTopology()

    def unit_name(self, slot: Slot) -> str:
        return unit_name(self.config.app, slot)

    def private_address(self, slot: Slot) -> str:
        return self.topology.slot_address(slot)

    def unit_path(self, slot: Slot) -> str:
        return f"{self.config.app_jail.base_path}/{self.unit_name(slot)}"

    @property
    def template_path(self) -> str:
        return f"{self.config.app_jail.base_path}/{TEMPLATE_DIR}/base"

    @staticmethod
    def other_slot(slot: Slot) -> Slot:
        return slot.other

    def list_active(self) -> Set[str]:
        result = self.transport.run("jls -q name 2>/dev/null || true")
        return {line.strip() for line in result.output.splitlines() if line.strip()}

    def determine_next_slot(self) -> Tuple[Slot, Optional[Slot]]:
        active = self.list_active()
        blue_active = self.unit_name(Slot.BLUE) in active
        green_active = self.unit_name(Slot.GREEN) in active

        if blue_active and green_active:
            self.logger.warning(
                "Both %s and %s are running. Replacing the blue slot.",
                self.unit_name(Slot.BLUE),
                self.unit_name(Slot.GREEN),
            )
            return Slot.BLUE, Slot.GREEN
        if blue_active:
            self.console.print("[blue]Blue slot active. Next deployment will use green slot.[/blue]")
            return Slot.GREEN, Slot.BLUE
        if green_active:
            self.console.print("[blue]Green slot active. Next deployment will use blue slot.[/blue]")
            return Slot.BLUE, Slot.GREEN

        self.console.print("[blue]No active jails found. First deployment will use blue slot.[/blue]")
        return Slot.BLUE, None

    def current_slot(self) -> Optional[Slot]:
        active = self.list_active()
        for slot in (Slot.BLUE, Slot.GREEN):
            if self.unit_name(slot) in active:
                return slot
        return None

    def is_running(self, slot: Slot) -> bool:
        return self.unit_name(slot) in self.list_active()

    def exists(self, slot: Slot) -> bool:
        try:
            result = self.transport.run(f"test -d {quote(self.unit_path(slot))}")
        except JailshipError as exc:
            self.logger.debug("Could not probe %s: %s", self.unit_path(slot), exc)
            return False
        return result.ok

    def create(self, slot: Slot):
        name = self.unit_name(slot)
        path = self.unit_path(slot)
        self.console.print(f"[blue]Creating jail {name}...[/blue]")

        if self.exists(slot):
            self.logger.info("Jail directory %s already exists, skipping template clone.", path)
        else:
            self.transport.run_checked(f"cp -a {quote(self.template_path)} {quote(path)}")

        self.transport.run_checked(f"mkdir -p {quote(path + JAIL_APP_DIR)}")
        self.transport.run_checked(f"cp /etc/resolv.conf {quote(path + '/etc/resolv.conf')}")
        self.console.print(f"[green]Jail {name} created.[/green]")

    def start(self, slot: Slot):
        name = self.unit_name(slot)
        if self.is_running(slot):
            self.logger.info("Jail %s is already running.", name)
            return

        address = self.private_address(slot)
        self.console.print(f"[blue]Starting jail {name} with IP {address}...[/blue]")
        self.transport.run_checked(
            f"jail -c name={name} path={quote(self.unit_path(slot))} "
            f'ip4.addr="{self.topology.interface}|{address}/32" '
            f"host.hostname={name} allow.raw_sockets persist"
        )
        self.console.print(f"[green]Jail {name} started.[/green]")

    def install_payload(self, slot: Slot, remote_archive: str):
        name = self.unit_name(slot)
        self.console.print(f"[blue]Installing release in jail {name}...[/blue]")
        self.transport.run_checked(
            f"tar -xzf {quote(remote_archive)} -C {quote(self.unit_path(slot) + JAIL_APP_DIR)}"
        )
        self.console.print(f"[green]Release installed in {name}.[/green]")

    def start_application(self, slot: Slot, env: Mapping[str, str]):
        name = self.unit_name(slot)
        command = self.config.render_release_value(self.config.release.start_command)
        self.console.print(f"[blue]Starting application in jail {name}...[/blue]")
        self.transport.run_checked(jexec(name, app_script(command, env, JAIL_APP_DIR)))
        self.console.print(f"[green]Application started in {name}.[/green]")

    def stop(self, slot: Slot):
        name = self.unit_name(slot)
        if not self.is_running(slot):
            self.logger.info("Jail %s is not running.", name)
            return

        self.console.print(f"[blue]Stopping jail {name}...[/blue]")
        self.transport.run_checked(f"jail -r {name}")

    def destroy(self, slot: Slot):
        name = self.unit_name(slot)
        self.console.print(f"[blue]Destroying jail {name}...[/blue]")
        self.stop(slot)
        if self.exists(slot):
            self.transport.run_checked(f"rm -rf {quote(self.unit_path(slot))}")
        self.console.print(f"[green]Jail {name} destroyed.[/green]")

    def destroy_stale(self) -> List[Slot]:
        """Removes jails left on disk but not running by an earlier cycle."""
        active = self.list_active()
        destroyed = []
        for slot in (Slot.BLUE, Slot.GREEN):
            if self.unit_name(slot) in active:
                continue
            if self.exists(slot):
                self.logger.info("Destroying stale jail %s.", self.unit_name(slot))
                self.destroy(slot)
                destroyed.append(slot)
        return destroyed

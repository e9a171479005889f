"""Caddy reverse proxy configuration service."""

from typing import Optional

from jailship.constants import CADDYFILE_PATH
from jailship.errors import JailshipError
from jailship.models import NetworkTopology, Slot
from jailship.shell import quote


class ProxyService:
    """Points the host's Caddy instance at one of the application slots.

    Caddy obtains TLS certificates on its own when a domain is configured;
    without a domain it serves plain HTTP on port 80.
    """

    def __init__(
        self,
        transport,
        logger,
        console,
        topology: Optional[NetworkTopology] = None,
        path: str = CADDYFILE_PATH,
    ):
        self.transport = transport
        self.logger = logger
        self.console = console
        self.topology = topology or NetworkTopology()
        self.path = path

    def render(self, config, slot: Slot) -> str:
        address = config.domain or ":80"
        upstream = f"{self.topology.slot_address(slot)}:{config.app_jail.port}"
        return f"{address} {{\n    reverse_proxy {upstream}\n}}\n"

    def read(self) -> Optional[str]:
        """Returns the current Caddyfile, or None when there is none."""
        try:
            probe = self.transport.run(f"test -f {quote(self.path)}")
            if not probe.ok:
                return None
            result = self.transport.run(f"cat {quote(self.path)}")
        except JailshipError as exc:
            self.logger.warning("Could not read %s: %s", self.path, exc)
            return None
        return result.output if result.ok else None

    def apply(self, text: str):
        self.console.print(f"[blue]Writing Caddyfile to {self.path}...[/blue]")
        self.write(text)
        self.console.print("[blue]Reloading Caddy...[/blue]")
        self.reload()
        self.console.print("[green]Caddy reloaded with new configuration.[/green]")

    def restore(self, text: str):
        self.console.print("[blue]Restoring previous Caddyfile...[/blue]")
        self.write(text)
        self.reload()
        self.console.print("[green]Previous Caddy configuration restored.[/green]")

    def write(self, text: str):
        self.transport.run_checked(f"printf '%s' {quote(text)} > {quote(self.path)}")

    def reload(self):
        self.transport.run_checked("service caddy reload")

"""One-time server preparation for jailship."""

import re
from typing import Optional

from jailship.constants import RELEASES_DIR, TEMPLATE_DIR
from jailship.errors import JailshipError
from jailship.models import NetworkTopology, Slot
from jailship.shell import quote

PF_CONF_PATH = "/etc/pf.conf"
PF_SECTION_START = "# jailship NAT"
PF_SECTION_END = "# end jailship"
BASE_URL_TEMPLATE = "https://download.freebsd.org/releases/{arch}/{version}/base.txz"


class ServerSetupService:
    """Prepares a fresh FreeBSD host for blue/green jail deployments.

    Every step probes the current state first, so running setup again on an
    already prepared host only refreshes the pieces that drifted.
    """

    def __init__(
        self,
        transport,
        proxy,
        accessories,
        logger,
        console,
        topology: Optional[NetworkTopology] = None,
        build_jail=None,
    ):
        self.transport = transport
        self.proxy = proxy
        self.accessories = accessories
        self.build_jail = build_jail
        self.logger = logger
        self.console = console
        self.topology = topology or NetworkTopology()

    def run(self, config):
        self.verify_freebsd()
        arch = self.detect_arch()
        self.enable_jails()
        self.configure_interface()
        self.configure_nat()
        self.create_directories(config)
        self.install_base_template(config, arch)
        self.install_caddy(config)

        if config.release.builder == "remote":
            self.build_jail.setup(config)
        else:
            self.console.print("[blue]Releases are built locally, skipping build jail.[/blue]")

        if config.accessories:
            self.accessories.setup(config)
        else:
            self.console.print("[blue]No accessories configured, skipping.[/blue]")

    def verify_freebsd(self):
        self.console.print("[blue]Verifying server is running FreeBSD...[/blue]")
        system = self.transport.run_checked("uname -s").strip()
        if system != "FreeBSD":
            raise JailshipError(f"Server is not running FreeBSD (got: {system or 'nothing'})")

    def detect_arch(self) -> str:
        arch = self.transport.run_checked("uname -m").strip()
        if not arch:
            raise JailshipError("Could not detect the server architecture.")
        self.console.print(f"[blue]Architecture: {arch}[/blue]")
        return arch

    def enable_jails(self):
        self.console.print("[blue]Enabling jail subsystem...[/blue]")
        interface = self.topology.interface
        self.transport.run_checked("sysrc jail_enable=YES")
        self.transport.run_checked(f"sysrc cloned_interfaces+={interface}")
        self.transport.run_checked(
            f"sysrc ifconfig_{interface}_alias0={quote('inet ' + self.gateway_cidr)}"
        )

    @property
    def gateway_cidr(self) -> str:
        prefix = self.topology.subnet.rsplit("/", 1)[-1]
        return f"{self.topology.gateway}/{prefix}"

    def configure_interface(self):
        interface = self.topology.interface
        self.console.print(f"[blue]Configuring loopback interface {interface}...[/blue]")

        status = self.transport.run(f"ifconfig {interface}")
        if not status.ok:
            self.transport.run_checked(f"ifconfig {interface} create")
            status = self.transport.run(f"ifconfig {interface}")

        if f"inet {self.topology.gateway} " in status.output:
            self.logger.info("%s already has alias %s.", interface, self.topology.gateway)
        else:
            self.transport.run_checked(f"ifconfig {interface} alias {self.gateway_cidr}")

    def detect_public_interface(self) -> str:
        output = self.transport.run_checked("route -n get default")
        match = re.search(r"^\s*interface:\s*(\S+)", output, re.MULTILINE)
        if not match:
            raise JailshipError(
                "Could not detect public network interface. Check that the server has a default route."
            )
        return match.group(1)

    def pf_rules(self, public_interface: str) -> str:
        return (
            f"\n{PF_SECTION_START} (jails on {self.topology.interface} reach the internet)\n"
            f"nat on {public_interface} from {self.topology.subnet} to any -> ({public_interface})\n"
            "pass all\n"
            f"{PF_SECTION_END}\n"
        )

    def configure_nat(self):
        self.console.print("[blue]Configuring NAT for jail network...[/blue]")
        public_interface = self.detect_public_interface()
        self.console.print(f"[blue]Detected public interface: {public_interface}[/blue]")

        self.transport.run_checked("sysctl net.inet.ip.forwarding=1")
        self.transport.run_checked("sysrc gateway_enable=YES")

        # Rewritten on every run so the rules follow interface changes.
        if self.transport.run(f"test -f {PF_CONF_PATH}").ok:
            self.transport.run_checked(
                f"sed -i '' {quote('/' + PF_SECTION_START + '/,/' + PF_SECTION_END + '/d')} {PF_CONF_PATH}"
            )
        self.transport.run_checked(f"printf '%s' {quote(self.pf_rules(public_interface))} >> {PF_CONF_PATH}")

        self.transport.run_checked("sysrc pf_enable=YES")
        if self.transport.run("service pf status").ok:
            self.transport.run_checked(f"pfctl -f {PF_CONF_PATH}")
        else:
            self.transport.run_checked("service pf start")
        self.console.print(f"[green]NAT configured on {public_interface}.[/green]")

    def create_directories(self, config):
        base_path = config.app_jail.base_path
        self.console.print(f"[blue]Creating directory structure at {base_path}...[/blue]")
        self.transport.run_checked(
            f"mkdir -p {quote(base_path + '/' + TEMPLATE_DIR)} {quote(base_path + '/' + RELEASES_DIR)}"
        )

    def install_base_template(self, config, arch: str):
        version = config.app_jail.freebsd_version
        templates = f"{config.app_jail.base_path}/{TEMPLATE_DIR}"
        base_dir = f"{templates}/base"

        if self.transport.run(f"test -d {quote(base_dir + '/bin')}").ok:
            self.logger.info("Base template already exists, skipping download.")
            return

        url = BASE_URL_TEMPLATE.format(arch=arch, version=version)
        archive = f"{templates}/base.txz"
        self.console.print(f"[blue]Downloading FreeBSD {version} base system ({arch})...[/blue]")
        self.transport.run_checked(f"fetch {quote(url)} -o {quote(archive)}", timeout=1800)
        self.transport.run_checked(f"mkdir -p {quote(base_dir)}")
        self.transport.run_checked(f"tar -xf {quote(archive)} -C {quote(base_dir)}", timeout=900)
        self.transport.run_checked(f"rm -f {quote(archive)}")
        self.console.print("[green]Base template downloaded and extracted.[/green]")

    def install_caddy(self, config):
        self.console.print("[blue]Installing Caddy reverse proxy...[/blue]")
        self.transport.run_checked("pkg install -y caddy", timeout=900)

        self.console.print("[blue]Writing initial Caddyfile...[/blue]")
        self.proxy.write(self.proxy.render(config, Slot.BLUE))

        self.transport.run_checked("sysrc caddy_enable=YES")
        if self.transport.run("service caddy status").ok:
            self.proxy.reload()
        else:
            self.transport.run_checked("service caddy start")
        self.console.print("[green]Caddy is serving the blue slot.[/green]")

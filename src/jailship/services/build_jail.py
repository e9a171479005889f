"""Persistent FreeBSD build jail for native release builds."""

import os
import tempfile
from typing import Optional, Set

from jailship.constants import BUILD_OUT_DIR, BUILD_SRC_DIR, RELEASES_DIR, TEMPLATE_DIR
from jailship.errors import JailshipError
from jailship.errors_catalog import actionable_error
from jailship.models import NetworkTopology
from jailship.shell import app_script, jexec, quote

BUILD_PACKAGES = ("elixir", "node24", "npm-node24", "git")
# Kept across builds so deps and compiled artifacts are reused.
PRESERVED_ENTRIES = ("deps", "_build", ".hex", ".mix")
NODE_PATH = "/usr/local/lib/node_modules"


class BuildJailService:
    """Compiles releases inside a long-lived jail on the deploy host.

    A release bundles the Erlang runtime of the machine that built it, so it
    has to be built on FreeBSD to run in the application jails. The jail is
    provisioned once by `setup` and keeps `deps/` and `_build/` between
    deploys.
    """

    PKG_TIMEOUT = 900
    DEPS_TIMEOUT = 600
    BUILD_TIMEOUT = 1800

    def __init__(
        self,
        transport,
        runner,
        logger,
        console,
        topology: Optional[NetworkTopology] = None,
        project_dir: str = ".",
        work_dir: Optional[str] = None,
    ):
        self.transport = transport
        self.runner = runner
        self.logger = logger
        self.console = console
        self.topology = topology or NetworkTopology()
        self.project_dir = project_dir
        self.work_dir = work_dir or tempfile.gettempdir()

    @staticmethod
    def jail_name(config) -> str:
        return f"{config.app}_build"

    def jail_path(self, config) -> str:
        return f"{config.app_jail.base_path}/{self.jail_name(config)}"

    def mount_points(self, config):
        jail_path = self.jail_path(config)
        return (
            f"{jail_path}/compat/linux/sys",
            f"{jail_path}/compat/linux/proc",
            f"{jail_path}/dev",
        )

    def setup(self, config):
        name = self.jail_name(config)
        jail_path = self.jail_path(config)
        self.console.print(f"[bold blue]Provisioning build jail ({name})[/bold blue]")

        if self.transport.run(f"test -d {quote(jail_path)}").ok:
            self.logger.info("Build jail %s already exists, skipping template clone.", name)
        else:
            template_path = f"{config.app_jail.base_path}/{TEMPLATE_DIR}/base"
            self.console.print(f"[blue]Creating build jail {name}...[/blue]")
            self.transport.run_checked(f"cp -a {quote(template_path)} {quote(jail_path)}")

        # Restarted below so the jail picks up a fresh resolv.conf.
        self._stop_jail(config)
        self.transport.run_checked(f"cp /etc/resolv.conf {quote(jail_path + '/etc/resolv.conf')}")
        self._start_jail(config)

        self.console.print(f"[blue]Installing {', '.join(BUILD_PACKAGES)} in {name}...[/blue]")
        self.transport.run_checked(
            f"jexec {name} pkg install -y {' '.join(BUILD_PACKAGES)}", timeout=self.PKG_TIMEOUT
        )
        self.console.print("[blue]Installing hex and rebar...[/blue]")
        self.transport.run_checked(f"jexec {name} mix local.hex --force", timeout=120)
        self.transport.run_checked(f"jexec {name} mix local.rebar --force", timeout=120)
        self.transport.run_checked(f"jexec {name} mkdir -p {BUILD_SRC_DIR} {BUILD_OUT_DIR}")

        self.console.print(f"[green]Build jail {name} provisioned successfully.[/green]")

    def ensure_running(self, config) -> bool:
        """Starts an existing build jail if needed. Returns True if started."""
        name = self.jail_name(config)
        if name in self._active_jails():
            self.logger.info("Build jail %s already running.", name)
            return False

        if not self.transport.run(f"test -d {quote(self.jail_path(config))}").ok:
            raise JailshipError(actionable_error("build_jail_missing", name=name))

        self.console.print(f"[blue]Build jail {name} not running, starting...[/blue]")
        self._start_jail(config)
        return True

    def upload_source(self, config) -> str:
        """Ships `git archive HEAD` into the build jail, keeping the build cache."""
        name = self.jail_name(config)
        local_tarball = os.path.join(self.work_dir, f"{config.app}-source.tar.gz")
        staging_path = f"{config.app_jail.base_path}/{RELEASES_DIR}/{config.app}-source.tar.gz"

        self.console.print("[blue]Creating source tarball...[/blue]")
        try:
            result = self.runner.run(
                ["git", "archive", "--format=tar.gz", "-o", local_tarball, "HEAD"],
                check=False,
                capture_output=True,
                cwd=self.project_dir,
            )
            if result.returncode != 0:
                output = (result.stderr or result.stdout or "").strip()
                raise JailshipError(
                    f"git archive failed (exit {result.returncode}): {output}. Is this a git repository?"
                )

            size_kb = os.path.getsize(local_tarball) / 1024
            self.console.print(f"[green]Source tarball created ({size_kb:.1f} KB)[/green]")

            self.transport.run_checked(f"mkdir -p {quote(os.path.dirname(staging_path))}")
            self.transport.upload(local_tarball, staging_path)
        finally:
            if os.path.exists(local_tarball):
                os.remove(local_tarball)

        self.console.print("[blue]Syncing source code (preserving build cache)...[/blue]")
        keep = " ".join(f"! -name {entry}" for entry in PRESERVED_ENTRIES)
        self.transport.run_checked(
            jexec(name, f"cd {BUILD_SRC_DIR} && find . -maxdepth 1 ! -name . {keep} -exec rm -rf {{}} +")
        )
        self.transport.run_checked(
            f"tar -xzf {quote(staging_path)} -C {quote(self.jail_path(config) + BUILD_SRC_DIR)}"
        )
        self.transport.run(f"rm -f {quote(staging_path)}")

        self.console.print(f"[green]Source code uploaded to {name}.[/green]")
        return staging_path

    def build_release(self, config) -> str:
        """Builds and packs the release in the jail; returns the host tarball path."""
        name = self.jail_name(config)
        release = config.release
        env = dict(release.build_env)
        release_dir = f"{BUILD_SRC_DIR}/{config.render_release_value(release.path)}"
        tarball = f"{BUILD_OUT_DIR}/{config.app}.tar.gz"

        self.console.print(f"[bold blue]Building release in build jail {name}[/bold blue]")
        self.console.print("[blue]Fetching dependencies...[/blue]")
        self.transport.run_checked(self._in_source(name, "mix deps.get", env), timeout=self.DEPS_TIMEOUT)

        prepare_env = {**env, "NODE_PATH": NODE_PATH}
        for cmd in release.prepare_commands:
            label = " ".join(cmd)
            result = self.transport.run(
                self._in_source(name, " ".join(quote(arg) for arg in cmd), prepare_env),
                timeout=self.BUILD_TIMEOUT,
            )
            if result.ok:
                self.console.print(f"[green]{label} finished.[/green]")
            else:
                self.console.print(f"[yellow]{label} failed, skipping.[/yellow]")

        for cmd in release.build_commands:
            self.transport.run_checked(
                self._in_source(name, " ".join(quote(arg) for arg in cmd), env),
                timeout=self.BUILD_TIMEOUT,
            )

        erts = self.transport.run(jexec(name, f"ls -d {quote(release_dir)}/erts-* 2>/dev/null"))
        if not erts.ok or not erts.output.strip():
            raise JailshipError(
                "Release does not include ERTS. Add `include_erts: true` to the release config in mix.exs."
            )

        self.console.print("[blue]Creating release tarball...[/blue]")
        self.transport.run_checked(jexec(name, f"tar -czf {tarball} -C {quote(release_dir)} ."))

        self.console.print("[green]Release built successfully.[/green]")
        return f"{self.jail_path(config)}{tarball}"

    @staticmethod
    def _in_source(name: str, command: str, env) -> str:
        return jexec(name, app_script(command, env, BUILD_SRC_DIR))

    def _active_jails(self) -> Set[str]:
        result = self.transport.run("jls -q name 2>/dev/null || true")
        return {line.strip() for line in result.output.splitlines() if line.strip()}

    def _mounted(self) -> Set[str]:
        result = self.transport.run("mount -p")
        return {fields[1] for fields in (line.split() for line in result.output.splitlines()) if len(fields) >= 2}

    def _stop_jail(self, config):
        name = self.jail_name(config)
        mounted = self._mounted()
        for mount_point in self.mount_points(config):
            if mount_point in mounted:
                self.transport.run_checked(f"umount {quote(mount_point)}")
        if name in self._active_jails():
            self.transport.run_checked(f"jail -r {name}")

    def _start_jail(self, config):
        name = self.jail_name(config)
        jail_path = self.jail_path(config)
        address = self.topology.build_address

        if name in self._active_jails():
            self.logger.info("Build jail %s already running.", name)
        else:
            self.console.print(f"[blue]Starting build jail {name} with IP {address}...[/blue]")
            self.transport.run_checked(
                f"jail -c name={name} path={quote(jail_path)} "
                f'ip4.addr="{self.topology.interface}|{address}/32" '
                f"host.hostname={name} allow.raw_sockets persist"
            )

        # Linux compat filesystems are needed by npm packages that ship Linux binaries.
        sys_point, proc_point, dev_point = self.mount_points(config)
        mounted = self._mounted()
        if dev_point not in mounted:
            self.transport.run_checked(f"mount -t devfs devfs {quote(dev_point)}")
        self.transport.run_checked(f"mkdir -p {quote(proc_point)} {quote(sys_point)}")
        if proc_point not in mounted:
            self.transport.run_checked(f"mount -t linprocfs linprocfs {quote(proc_point)}")
        if sys_point not in mounted:
            self.transport.run_checked(f"mount -t linsysfs linsysfs {quote(sys_point)}")

        self.console.print(f"[green]Build jail {name} started.[/green]")

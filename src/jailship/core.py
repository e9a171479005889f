import logging
import os
import time
from typing import Any, Callable, Dict, Optional

from rich.console import Console

from .constants import DEFAULT_CONFIG_PATH, MASTER_KEY_PATH, SECRETS_PATH
from .errors import CommandError, JailshipError
from .errors_catalog import actionable_error
from .models import DeployConfig, NetworkTopology, Slot
from .pipeline import Pipeline, PipelineResult
from .services.accessories import AccessoryService
from .services.build_jail import BuildJailService
from .services.command_runner import CommandRunner
from .services.config_loader import ConfigLoader
from .services.health_check import HealthProbe
from .services.migrations import MigrationService
from .services.proxy import ProxyService
from .services.release import ReleaseService
from .services.secrets import SecretsService
from .services.server_setup import ServerSetupService
from .services.slots import SlotManager
from .services.ssh_transport import SSHTransport
from .shell import app_script, jexec, quote
from .steps import deploy_steps, rollback_steps

console = Console()
logger = logging.getLogger("jailship")


class Deployer:
    """Entry point behind every CLI command.

    Each public operation loads the configuration, opens one SSH connection
    when it needs the server, does its work and returns a process exit code.
    The connection is closed on every exit path.
    """

    def __init__(
        self,
        config_path: str = DEFAULT_CONFIG_PATH,
        project_dir: Optional[str] = None,
        transport_factory: Optional[Callable[..., Any]] = None,
        topology: Optional[NetworkTopology] = None,
        sleep=time.sleep,
    ):
        self.config_path = config_path
        self.project_dir = project_dir or os.getcwd()
        self.transport_factory = transport_factory or SSHTransport.from_config
        self.topology = topology or NetworkTopology()
        self.sleep = sleep

        self.config_loader = ConfigLoader()
        self.command_runner = CommandRunner(logger=logger)
        self.release_service = ReleaseService(
            runner=self.command_runner,
            logger=logger,
            console=console,
            project_dir=self.project_dir,
        )
        self.secrets_service = SecretsService(
            logger=logger,
            console=console,
            secrets_path=os.path.join(self.project_dir, SECRETS_PATH),
            key_path=os.path.join(self.project_dir, MASTER_KEY_PATH),
        )

    def load_config(self) -> DeployConfig:
        config = self.config_loader.load(self.config_path)
        logger.debug("Loaded configuration for %s from %s", config.app, self.config_path)
        return config

    def open_transport(self, config: DeployConfig):
        return self.transport_factory(config.server, logger=logger, console=console)

    def build_context(self, config: DeployConfig, transport) -> Dict[str, Any]:
        return {
            "config": config,
            "console": console,
            "transport": transport,
            "slots": SlotManager(transport, config, logger, console, self.topology),
            "health_probe": HealthProbe(transport, logger, console, sleep=self.sleep),
            "proxy": ProxyService(transport, logger, console, self.topology),
            "secrets": self.secrets_service,
            "release": self.release_service,
            "build_jail": self.build_jail(transport),
            "migrations": MigrationService(transport, logger, console),
            "accessories": AccessoryService(transport, logger, console, self.topology),
        }

    def build_jail(self, transport) -> BuildJailService:
        return BuildJailService(
            transport,
            self.command_runner,
            logger,
            console,
            topology=self.topology,
            project_dir=self.project_dir,
        )

    def deploy(self) -> int:
        return self._execute("Deploy", self._deploy)

    def rollback(self) -> int:
        return self._execute("Rollback", self._rollback)

    def setup(self) -> int:
        return self._execute("Setup", self._setup)

    def logs(self, follow: bool = False, lines: int = 100) -> int:
        return self._execute("Logs", lambda: self._logs(follow, lines))

    def run_command(self, command: str) -> int:
        return self._execute("Remote command", lambda: self._run_command(command))

    def secrets_init(self) -> int:
        return self._execute("Secrets init", self.secrets_service.init)

    def secrets_edit(self) -> int:
        return self._execute("Secrets edit", self.secrets_service.edit)

    def _execute(self, label: str, operation: Callable[[], Any]) -> int:
        try:
            result = operation()
            return result if isinstance(result, int) and not isinstance(result, bool) else 0
        except KeyboardInterrupt:
            console.print("[bold red]Operation cancelled by user.[/bold red]")
            logger.info("Operation cancelled by user")
            return 1
        except JailshipError as exc:
            console.print(f"[bold red]{label} failed:[/bold red] {exc}")
            logger.error(str(exc))
            return 1
        except Exception as exc:
            console.print(f"[bold red]Unexpected error:[/bold red] {exc}")
            logger.exception("Unexpected error")
            return 1

    def _run_pipeline(self, config: DeployConfig, steps) -> PipelineResult:
        with self.open_transport(config) as transport:
            context = self.build_context(config, transport)
            return Pipeline(steps, logger, console).run(context)

    def _deploy(self) -> int:
        config = self.load_config()
        console.print(f"[bold blue]Deploying {config.app} to {config.server.host}[/bold blue]")
        logger.info("Starting deploy of %s", config.app)

        result = self._run_pipeline(config, deploy_steps(config.release.builder))
        return self._report(result, "Deploy", config)

    def _rollback(self) -> int:
        config = self.load_config()
        console.print(f"[bold blue]Rolling back {config.app} on {config.server.host}[/bold blue]")
        logger.info("Starting rollback of %s", config.app)

        result = self._run_pipeline(config, rollback_steps())
        return self._report(result, "Rollback", config)

    def _report(self, result: PipelineResult, label: str, config: DeployConfig) -> int:
        if not result.ok:
            console.print(f"[bold red]{label} failed at '{result.failed_step}':[/bold red] {result.error}")
            logger.error("%s failed at %s: %s", label, result.failed_step, result.error)
            return 1

        slot: Slot = result.context["next_slot"]
        console.print(
            f"[bold green]{label} complete! {config.app}_{slot.value} is now active.[/bold green]"
        )
        return 0

    def _setup(self) -> int:
        config = self.load_config()
        console.print(f"[bold blue]Setting up server {config.server.host}[/bold blue]")

        with self.open_transport(config) as transport:
            proxy = ProxyService(transport, logger, console, self.topology)
            accessories = AccessoryService(transport, logger, console, self.topology)
            ServerSetupService(
                transport,
                proxy,
                accessories,
                logger,
                console,
                self.topology,
                build_jail=self.build_jail(transport),
            ).run(config)

        console.print("[bold green]Server setup complete![/bold green]")
        return 0

    def _active_unit(self, config: DeployConfig, transport) -> str:
        slots = SlotManager(transport, config, logger, console, self.topology)
        slot = slots.current_slot()
        if slot is None:
            raise JailshipError(actionable_error("no_active_jail", app=config.app))
        return slots.unit_name(slot)

    def _logs(self, follow: bool, lines: int) -> int:
        config = self.load_config()
        log_path = config.render_release_value(config.release.log_path)

        with self.open_transport(config) as transport:
            name = self._active_unit(config, transport)
            follow_flag = "-f " if follow else ""
            command = f"jexec {name} tail {follow_flag}-n {int(lines)} {quote(log_path)}"

            if follow:
                console.print(f"[blue]Following logs from {name} (Ctrl+C to stop)...[/blue]")
                try:
                    transport.run_streaming(command)
                except KeyboardInterrupt:
                    console.print("\n[blue]Stopped following logs.[/blue]")
                return 0

            exit_code = transport.run_streaming(command)
            if exit_code != 0:
                raise CommandError(command, exit_code)
        return 0

    def _run_command(self, command: str) -> int:
        command = command.strip()
        if not command:
            raise JailshipError('No command specified. Usage: jailship run "<command>"')

        config = self.load_config()
        _, config = self.secrets_service.merge_env(config)

        with self.open_transport(config) as transport:
            name = self._active_unit(config, transport)
            console.print(f"[blue]Running in {name}: {command}[/blue]")
            exit_code = transport.run_streaming(jexec(name, app_script(command, config.env)))

        if exit_code != 0:
            console.print(f"[yellow]Remote command exited with code {exit_code}.[/yellow]")
            return max(1, exit_code)
        return 0

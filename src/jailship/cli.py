import logging

import click
from rich.logging import RichHandler

from .constants import DEFAULT_CONFIG_PATH
from .core import Deployer

logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[RichHandler(rich_tracebacks=True, show_level=False, show_path=False)],
)


def _configure_logging(verbose: bool, log_file):
    logger = logging.getLogger("jailship")

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.setLevel(logging.DEBUG)
    else:
        logger.setLevel(logging.INFO)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
        logger.addHandler(file_handler)


@click.group()
@click.option(
    "-c",
    "--config",
    "config_path",
    default=DEFAULT_CONFIG_PATH,
    show_default=True,
    type=click.Path(),
    help="Path to the YAML deploy configuration.",
)
@click.option("--verbose", is_flag=True, default=False, help="Enable verbose logging")
@click.option("--log-file", type=click.Path(), help="Path to log file")
@click.pass_context
def main(ctx, config_path, verbose, log_file):
    """Blue/green deployments to FreeBSD jails over SSH."""
    _configure_logging(verbose, log_file)
    ctx.obj = Deployer(config_path=config_path)


@main.command()
@click.pass_obj
def deploy(deployer):
    """Build, ship and switch to a new release."""
    raise SystemExit(deployer.deploy())


@main.command()
@click.pass_obj
def setup(deployer):
    """Prepare the server for deployments."""
    raise SystemExit(deployer.setup())


@main.command()
@click.pass_obj
def rollback(deployer):
    """Switch traffic back to the previous jail."""
    raise SystemExit(deployer.rollback())


@main.command(context_settings={"ignore_unknown_options": True})
@click.argument("command", nargs=-1, required=True, type=click.UNPROCESSED)
@click.pass_obj
def run(deployer, command):
    """Run a command inside the active jail."""
    raise SystemExit(deployer.run_command(" ".join(command)))


@main.command()
@click.option("-f", "--follow", is_flag=True, default=False, help="Stream new log lines.")
@click.option("-n", "--lines", type=int, default=100, show_default=True, help="Number of lines to show.")
@click.pass_obj
def logs(deployer, follow, lines):
    """Show the application log of the active jail."""
    raise SystemExit(deployer.logs(follow=follow, lines=lines))


@main.group()
def secrets():
    """Manage encrypted deploy secrets."""


@secrets.command("init")
@click.pass_obj
def secrets_init(deployer):
    """Generate a master key and an encrypted secrets file."""
    raise SystemExit(deployer.secrets_init())


@secrets.command("edit")
@click.pass_obj
def secrets_edit(deployer):
    """Decrypt, edit and re-encrypt the secrets file."""
    raise SystemExit(deployer.secrets_edit())


if __name__ == "__main__":
    main()

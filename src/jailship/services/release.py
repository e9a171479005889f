"""Local release build and upload service for jailship."""

import os
import tarfile
from datetime import datetime, timezone

from jailship.constants import RELEASES_DIR
from jailship.errors import JailshipError
from jailship.shell import quote


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ReleaseService:
    """Builds the release on the workstation and ships it to the host."""

    BUILD_TIMEOUT_SECONDS = 1800

    def __init__(self, runner, logger, console, project_dir: str = ".", clock=_utc_now):
        self.runner = runner
        self.logger = logger
        self.console = console
        self.project_dir = project_dir
        self.clock = clock

    def release_dir(self, config) -> str:
        return os.path.join(self.project_dir, config.render_release_value(config.release.path))

    def tarball_path(self, config) -> str:
        # Placed beside the `rel/` directory: _build/prod/<app>.tar.gz
        build_root = os.path.dirname(os.path.dirname(self.release_dir(config).rstrip("/")))
        return os.path.join(build_root or self.project_dir, f"{config.app}.tar.gz")

    def build(self, config) -> str:
        release = config.release
        self.console.print(f"[blue]Building release for {config.app}...[/blue]")

        for cmd in release.prepare_commands:
            result = self.runner.run(
                list(cmd),
                check=False,
                timeout=self.BUILD_TIMEOUT_SECONDS,
                env=release.build_env,
                cwd=self.project_dir,
            )
            if result.returncode == 0:
                self.console.print(f"[green]{' '.join(cmd)} finished.[/green]")
            else:
                self.console.print(f"[yellow]{' '.join(cmd)} failed, skipping.[/yellow]")

        for cmd in release.build_commands:
            self.runner.run(
                list(cmd),
                timeout=self.BUILD_TIMEOUT_SECONDS,
                env=release.build_env,
                cwd=self.project_dir,
            )

        return self.create_tarball(config)

    def create_tarball(self, config) -> str:
        release_dir = self.release_dir(config)
        if not os.path.isdir(release_dir):
            raise JailshipError(f"Release directory not found at {release_dir}")

        tarball = self.tarball_path(config)
        self.console.print(f"[blue]Creating tarball at {tarball}...[/blue]")
        try:
            with tarfile.open(tarball, "w:gz") as archive:
                archive.add(release_dir, arcname=".")
        except (OSError, tarfile.TarError) as exc:
            raise JailshipError(f"Could not create release tarball {tarball}: {exc}") from exc

        size_mb = os.path.getsize(tarball) / (1024 * 1024)
        self.console.print(f"[green]Tarball created ({size_mb:.1f} MB)[/green]")
        return tarball

    def remote_path(self, config) -> str:
        timestamp = self.clock().strftime("%Y%m%d%H%M%S")
        return f"{config.app_jail.base_path}/{RELEASES_DIR}/{config.app}-{timestamp}.tar.gz"

    def upload(self, transport, tarball: str, config) -> str:
        remote_path = self.remote_path(config)
        transport.run_checked(f"mkdir -p {quote(os.path.dirname(remote_path))}")
        transport.upload(tarball, remote_path)
        self.logger.info("Release uploaded to %s", remote_path)
        return remote_path

    def remove_remote(self, transport, remote_path: str):
        transport.run(f"rm -f {quote(remote_path)}")

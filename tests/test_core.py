import shlex

import pytest

from jailship.core import Deployer
from jailship.models import CommandResult

CADDYFILE = "/usr/local/etc/caddy/Caddyfile"

CONFIG = """\
app: my_app
server:
  host: jails.example.com
app_jail:
  base_path: /usr/local/jails
  freebsd_version: 14.2-RELEASE
release:
  builder: local
health_check:
  attempts: 2
  interval: 0
env:
  PHX_HOST: example.com
"""


class FakeHost:
    """In-memory FreeBSD host that tracks jails, directories and the Caddyfile."""

    def __init__(self, healthy=True):
        self.healthy = healthy
        self.running = set()
        self.directories = set()
        self.caddyfile = None
        self.commands = []
        self.streamed = []
        self.stream_exit_code = 0
        self.opened = 0
        self.closed = 0

    def factory(self, server, logger=None, console=None):
        self.server = server
        return self

    def __enter__(self):
        self.opened += 1
        return self

    def __exit__(self, exc_type, exc, tb):
        self.closed += 1
        return False

    def run(self, command, timeout=None, observer=None):
        self.commands.append(command)
        args = shlex.split(command)
        output, exit_code = "", 0

        if args[0] == "jls":
            output = "\n".join(sorted(self.running))
        elif args[:2] == ["test", "-d"]:
            exit_code = 0 if args[2] in self.directories else 1
        elif args[:2] == ["test", "-f"] and args[2] == CADDYFILE:
            exit_code = 0 if self.caddyfile is not None else 1
        elif args[0] == "cat" and args[1] == CADDYFILE:
            output = self.caddyfile or ""
        elif args[0] == "printf" and args[-1] == CADDYFILE:
            self.caddyfile = args[2]
        elif args[:2] == ["cp", "-a"]:
            self.directories.add(args[3])
        elif args[:2] == ["rm", "-rf"]:
            self.directories.discard(args[2])
        elif args[:2] == ["jail", "-c"]:
            self.running.add(args[2].split("=", 1)[1])
        elif args[:2] == ["jail", "-r"]:
            self.running.discard(args[2])
        elif args[0] == "fetch":
            exit_code = 0 if self.healthy else 1

        return CommandResult(command, output, exit_code)

    def run_checked(self, command, timeout=None):
        result = self.run(command, timeout=timeout)
        assert result.ok, command
        return result.output

    def run_streaming(self, command, observer=None):
        self.streamed.append(command)
        return self.stream_exit_code


class FakeRelease:
    def __init__(self):
        self.uploads = 0
        self.removed = []

    def build(self, config):
        return "/tmp/my_app.tar.gz"

    def upload(self, transport, tarball, config):
        self.uploads += 1
        return f"/usr/local/jails/.releases/my_app-{self.uploads}.tar.gz"

    def remove_remote(self, transport, remote_path):
        self.removed.append(remote_path)


class FakeBuildJail:
    def __init__(self):
        self.calls = []

    def ensure_running(self, config):
        self.calls.append("ensure_running")
        return False

    def upload_source(self, config):
        self.calls.append("upload_source")
        return "/usr/local/jails/.releases/my_app-source.tar.gz"

    def build_release(self, config):
        self.calls.append("build_release")
        return "/usr/local/jails/my_app_build/build/out/my_app.tar.gz"


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "deploy.yml"
    path.write_text(CONFIG, encoding="utf-8")
    return path


def build_deployer(tmp_path, config_file, host):
    deployer = Deployer(
        config_path=str(config_file),
        project_dir=str(tmp_path),
        transport_factory=host.factory,
        sleep=lambda _seconds: None,
    )
    deployer.release_service = FakeRelease()
    return deployer


def test_first_deploy_activates_blue_slot(tmp_path, config_file):
    host = FakeHost()
    deployer = build_deployer(tmp_path, config_file, host)

    assert deployer.deploy() == 0

    assert host.running == {"my_app_blue"}
    assert "/usr/local/jails/my_app_blue" in host.directories
    assert "reverse_proxy 10.0.0.2:4000" in host.caddyfile
    assert host.opened == host.closed == 1
    start_app = [command for command in host.commands if command.startswith("jexec my_app_blue")]
    assert "PHX_HOST=example.com bin/my_app daemon" in shlex.split(start_app[0])[4]


def test_deploy_alternates_slots_and_rollback_restores_previous(tmp_path, config_file):
    host = FakeHost()
    deployer = build_deployer(tmp_path, config_file, host)

    assert deployer.deploy() == 0
    assert deployer.deploy() == 0

    assert host.running == {"my_app_green"}
    assert "/usr/local/jails/my_app_blue" in host.directories
    assert "reverse_proxy 10.0.0.3:4000" in host.caddyfile

    assert deployer.rollback() == 0

    assert host.running == {"my_app_blue"}
    assert "reverse_proxy 10.0.0.2:4000" in host.caddyfile


def test_failed_health_check_unwinds_new_slot(tmp_path, config_file):
    host = FakeHost()
    deployer = build_deployer(tmp_path, config_file, host)
    assert deployer.deploy() == 0
    previous_caddyfile = host.caddyfile

    host.healthy = False
    assert deployer.deploy() == 1

    assert host.running == {"my_app_blue"}
    assert "/usr/local/jails/my_app_green" not in host.directories
    assert host.caddyfile == previous_caddyfile
    assert deployer.release_service.removed == ["/usr/local/jails/.releases/my_app-2.tar.gz"]
    assert host.opened == host.closed == 2


def test_rollback_without_active_jail_fails(tmp_path, config_file):
    host = FakeHost()

    assert build_deployer(tmp_path, config_file, host).rollback() == 1
    assert host.closed == 1


def test_missing_config_fails_without_connecting(tmp_path):
    host = FakeHost()
    deployer = Deployer(
        config_path=str(tmp_path / "missing.yml"),
        project_dir=str(tmp_path),
        transport_factory=host.factory,
    )

    assert deployer.deploy() == 1
    assert host.opened == 0


def test_run_command_executes_in_active_jail_with_env(tmp_path, config_file):
    host = FakeHost()
    host.running.add("my_app_green")

    assert build_deployer(tmp_path, config_file, host).run_command("bin/my_app remote") == 0

    args = shlex.split(host.streamed[0])
    assert args[:4] == ["jexec", "my_app_green", "/bin/sh", "-c"]
    assert args[4] == "cd /app && PHX_HOST=example.com bin/my_app remote"


def test_run_command_reports_remote_exit_code(tmp_path, config_file):
    host = FakeHost()
    host.running.add("my_app_blue")
    host.stream_exit_code = 3

    assert build_deployer(tmp_path, config_file, host).run_command("false") == 3


def test_run_command_rejects_empty_command(tmp_path, config_file):
    host = FakeHost()

    assert build_deployer(tmp_path, config_file, host).run_command("   ") == 1
    assert host.opened == 0


def test_logs_tails_release_log_of_active_jail(tmp_path, config_file):
    host = FakeHost()
    host.running.add("my_app_blue")

    assert build_deployer(tmp_path, config_file, host).logs(lines=50) == 0
    assert host.streamed == ["jexec my_app_blue tail -n 50 /app/tmp/log/my_app.log"]


def test_logs_follow_stops_cleanly_on_interrupt(tmp_path, config_file):
    host = FakeHost()
    host.running.add("my_app_blue")

    def interrupted(command, observer=None):
        host.streamed.append(command)
        raise KeyboardInterrupt

    host.run_streaming = interrupted

    assert build_deployer(tmp_path, config_file, host).logs(follow=True) == 0
    assert host.streamed == ["jexec my_app_blue tail -f -n 100 /app/tmp/log/my_app.log"]


def test_secrets_init_creates_key_and_file(tmp_path, config_file):
    deployer = build_deployer(tmp_path, config_file, FakeHost())

    assert deployer.secrets_init() == 0
    assert (tmp_path / ".jailship" / "master.key").exists()
    assert (tmp_path / "deploy.secrets.yml").exists()
    assert deployer.secrets_init() == 1


def test_deploy_builds_in_build_jail_by_default(tmp_path):
    config_file = tmp_path / "deploy.yml"
    config_file.write_text(CONFIG.replace("release:\n  builder: local\n", ""), encoding="utf-8")
    host = FakeHost()
    build_jail = FakeBuildJail()
    deployer = build_deployer(tmp_path, config_file, host)
    deployer.build_jail = lambda transport: build_jail

    assert deployer.deploy() == 0

    assert build_jail.calls == ["ensure_running", "upload_source", "build_release"]
    assert deployer.release_service.uploads == 0
    assert host.running == {"my_app_blue"}
    archive = "/usr/local/jails/my_app_build/build/out/my_app.tar.gz"
    assert any(command.startswith(f"tar -xzf {archive}") for command in host.commands)

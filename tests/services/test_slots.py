import shlex

import pytest

from jailship.errors import CommandError, JailshipError
from jailship.models import (
    AppJailConfig,
    CommandResult,
    DeployConfig,
    NetworkTopology,
    ServerConfig,
    Slot,
    unit_name,
)
from jailship.services.slots import SlotManager


class DummyLogger:
    def __init__(self):
        self.warned = False

    def info(self, *_args, **_kwargs):
        return None

    def debug(self, *_args, **_kwargs):
        return None

    def warning(self, *_args, **_kwargs):
        self.warned = True


class DummyConsole:
    def print(self, *_args, **_kwargs):
        return None


class FakeTransport:
    """Answers commands from a list of (substring, output, exit_code) rules."""

    def __init__(self, rules=()):
        self.rules = list(rules)
        self.commands = []

    def run(self, command, timeout=None, observer=None):
        self.commands.append(command)
        for pattern, output, exit_code in self.rules:
            if pattern in command:
                return CommandResult(command, output, exit_code)
        return CommandResult(command, "", 0)

    def run_checked(self, command, timeout=None):
        result = self.run(command, timeout=timeout)
        if not result.ok:
            raise CommandError(command, result.exit_code, result.output)
        return result.output


def build_config():
    return DeployConfig(
        app="my_app",
        server=ServerConfig(host="jails.example.com"),
        app_jail=AppJailConfig(base_path="/usr/local/jails", freebsd_version="14.2-RELEASE"),
    )


def build_manager(transport, logger=None):
    return SlotManager(transport, build_config(), logger or DummyLogger(), DummyConsole())


def test_unit_names_and_addresses_are_fixed_per_slot():
    manager = build_manager(FakeTransport())

    assert unit_name("my_app", Slot.BLUE) == "my_app_blue"
    assert manager.unit_name(Slot.GREEN) == "my_app_green"
    assert manager.private_address(Slot.BLUE) == "10.0.0.2"
    assert manager.private_address(Slot.GREEN) == "10.0.0.3"
    assert manager.unit_path(Slot.BLUE) == "/usr/local/jails/my_app_blue"
    assert manager.template_path == "/usr/local/jails/.templates/base"


def test_other_slot_is_an_involution():
    assert SlotManager.other_slot(Slot.BLUE) is Slot.GREEN
    assert SlotManager.other_slot(Slot.GREEN) is Slot.BLUE
    assert Slot.BLUE.other.other is Slot.BLUE


def test_custom_topology_changes_addresses():
    topology = NetworkTopology(blue_address="10.9.0.2", green_address="10.9.0.3")
    manager = SlotManager(FakeTransport(), build_config(), DummyLogger(), DummyConsole(), topology)

    assert manager.private_address(Slot.GREEN) == "10.9.0.3"


@pytest.mark.parametrize(
    "active, expected",
    [
        ("", (Slot.BLUE, None)),
        ("my_app_blue\n", (Slot.GREEN, Slot.BLUE)),
        ("my_app_green\nmy_app_db\n", (Slot.BLUE, Slot.GREEN)),
        ("my_app_blue\nmy_app_green\n", (Slot.BLUE, Slot.GREEN)),
    ],
)
def test_determine_next_slot_follows_decision_table(active, expected):
    manager = build_manager(FakeTransport([("jls", active, 0)]))

    assert manager.determine_next_slot() == expected


def test_determine_next_slot_warns_when_both_slots_run():
    logger = DummyLogger()
    manager = build_manager(FakeTransport([("jls", "my_app_blue\nmy_app_green\n", 0)]), logger)

    manager.determine_next_slot()

    assert logger.warned is True


def test_other_apps_jails_are_ignored():
    manager = build_manager(FakeTransport([("jls", "other_app_blue\n", 0)]))

    assert manager.current_slot() is None
    assert manager.determine_next_slot() == (Slot.BLUE, None)


def test_exists_uses_exit_code_of_directory_check():
    transport = FakeTransport([("test -d /usr/local/jails/my_app_green", "", 1)])
    manager = build_manager(transport)

    assert manager.exists(Slot.BLUE) is True
    assert manager.exists(Slot.GREEN) is False


def test_exists_is_false_when_check_cannot_run():
    class BrokenTransport(FakeTransport):
        def run(self, command, timeout=None, observer=None):
            raise JailshipError("channel closed")

    assert build_manager(BrokenTransport()).exists(Slot.BLUE) is False


def test_create_clones_template_only_when_missing():
    transport = FakeTransport([("test -d", "", 1)])
    build_manager(transport).create(Slot.GREEN)

    assert "cp -a /usr/local/jails/.templates/base /usr/local/jails/my_app_green" in transport.commands
    assert "mkdir -p /usr/local/jails/my_app_green/app" in transport.commands
    assert "cp /etc/resolv.conf /usr/local/jails/my_app_green/etc/resolv.conf" in transport.commands


def test_create_is_idempotent_for_existing_jail():
    transport = FakeTransport()
    build_manager(transport).create(Slot.BLUE)

    assert not any(command.startswith("cp -a") for command in transport.commands)
    assert "cp /etc/resolv.conf /usr/local/jails/my_app_blue/etc/resolv.conf" in transport.commands


def test_start_creates_jail_with_slot_address():
    transport = FakeTransport([("jls", "", 0)])
    build_manager(transport).start(Slot.GREEN)

    start = [command for command in transport.commands if command.startswith("jail -c")]
    assert start == [
        'jail -c name=my_app_green path=/usr/local/jails/my_app_green ip4.addr="lo1|10.0.0.3/32" '
        "host.hostname=my_app_green allow.raw_sockets persist"
    ]


def test_start_is_noop_when_already_running():
    transport = FakeTransport([("jls", "my_app_blue\n", 0)])
    build_manager(transport).start(Slot.BLUE)

    assert not any(command.startswith("jail -c") for command in transport.commands)


def test_stop_only_removes_running_jail():
    transport = FakeTransport([("jls", "my_app_blue\n", 0)])
    manager = build_manager(transport)

    manager.stop(Slot.GREEN)
    manager.stop(Slot.BLUE)

    assert [command for command in transport.commands if command.startswith("jail -r")] == ["jail -r my_app_blue"]


def test_install_payload_extracts_into_app_directory():
    transport = FakeTransport()
    build_manager(transport).install_payload(Slot.BLUE, "/usr/local/jails/.releases/my_app-20250101000000.tar.gz")

    assert transport.commands[-1] == (
        "tar -xzf /usr/local/jails/.releases/my_app-20250101000000.tar.gz -C /usr/local/jails/my_app_blue/app"
    )


def test_start_application_quotes_environment_values():
    transport = FakeTransport()
    build_manager(transport).start_application(Slot.BLUE, {"SECRET_KEY_BASE": "it's secret", "PORT": "4000"})

    jexec_args = shlex.split(transport.commands[-1])
    assert jexec_args[:4] == ["jexec", "my_app_blue", "/bin/sh", "-c"]
    assert shlex.split(jexec_args[4]) == [
        "cd",
        "/app",
        "&&",
        "SECRET_KEY_BASE=it's secret",
        "PORT=4000",
        "bin/my_app",
        "daemon",
    ]


def test_destroy_stale_removes_stopped_jails_on_disk():
    transport = FakeTransport(
        [
            ("jls", "my_app_green\n", 0),
            ("test -d /usr/local/jails/my_app_blue", "", 0),
        ]
    )

    destroyed = build_manager(transport).destroy_stale()

    assert destroyed == [Slot.BLUE]
    assert "rm -rf /usr/local/jails/my_app_blue" in transport.commands
    assert "rm -rf /usr/local/jails/my_app_green" not in transport.commands


def test_destroy_stale_skips_missing_jails():
    transport = FakeTransport([("jls", "", 0), ("test -d", "", 1)])

    assert build_manager(transport).destroy_stale() == []
    assert not any(command.startswith("rm -rf") for command in transport.commands)

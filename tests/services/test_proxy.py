import shlex

from jailship.errors import CommandError
from jailship.models import AppJailConfig, CommandResult, DeployConfig, ServerConfig, Slot
from jailship.services.proxy import ProxyService


class DummyLogger:
    def warning(self, *_args, **_kwargs):
        return None


class DummyConsole:
    def print(self, *_args, **_kwargs):
        return None


class FakeTransport:
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


def build_config(domain=None):
    return DeployConfig(
        app="my_app",
        server=ServerConfig(host="jails.example.com"),
        app_jail=AppJailConfig(base_path="/usr/local/jails", freebsd_version="14.2-RELEASE", port=4000),
        domain=domain,
    )


def test_render_uses_domain_for_automatic_tls():
    proxy = ProxyService(FakeTransport(), DummyLogger(), DummyConsole())

    assert proxy.render(build_config("example.com"), Slot.GREEN) == (
        "example.com {\n    reverse_proxy 10.0.0.3:4000\n}\n"
    )


def test_render_without_domain_listens_on_port_80():
    proxy = ProxyService(FakeTransport(), DummyLogger(), DummyConsole())

    assert proxy.render(build_config(), Slot.BLUE) == ":80 {\n    reverse_proxy 10.0.0.2:4000\n}\n"


def test_read_returns_none_when_caddyfile_is_missing():
    transport = FakeTransport([("test -f", "", 1)])

    assert ProxyService(transport, DummyLogger(), DummyConsole()).read() is None
    assert not any(command.startswith("cat ") for command in transport.commands)


def test_read_returns_current_content():
    content = ":80 {\n    reverse_proxy 10.0.0.2:4000\n}\n"
    transport = FakeTransport([("cat /usr/local/etc/caddy/Caddyfile", content, 0)])

    assert ProxyService(transport, DummyLogger(), DummyConsole()).read() == content


def test_apply_writes_quoted_content_then_reloads():
    transport = FakeTransport()
    proxy = ProxyService(transport, DummyLogger(), DummyConsole())
    content = proxy.render(build_config("example.com"), Slot.BLUE)

    proxy.apply(content)

    write, reload = transport.commands
    assert shlex.split(write) == ["printf", "%s", content, ">", "/usr/local/etc/caddy/Caddyfile"]
    assert reload == "service caddy reload"


def test_restore_rewrites_previous_content():
    transport = FakeTransport()
    ProxyService(transport, DummyLogger(), DummyConsole()).restore("old config\n")

    assert shlex.split(transport.commands[0])[2] == "old config\n"
    assert transport.commands[-1] == "service caddy reload"

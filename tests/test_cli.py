from click.testing import CliRunner

import jailship.cli as cli_module


def install_fake_deployer(monkeypatch, exit_code=0):
    captured = {"calls": []}

    class FakeDeployer:
        def __init__(self, **kwargs):
            captured.update(kwargs)

        def _record(self, name, *args, **kwargs):
            captured["calls"].append((name, args, kwargs))
            return exit_code

        def deploy(self):
            return self._record("deploy")

        def setup(self):
            return self._record("setup")

        def rollback(self):
            return self._record("rollback")

        def run_command(self, command):
            return self._record("run_command", command)

        def logs(self, follow=False, lines=100):
            return self._record("logs", follow=follow, lines=lines)

        def secrets_init(self):
            return self._record("secrets_init")

        def secrets_edit(self):
            return self._record("secrets_edit")

    monkeypatch.setattr(cli_module, "Deployer", FakeDeployer)
    return captured


def test_cli_deploy_uses_default_config_path(monkeypatch):
    captured = install_fake_deployer(monkeypatch)

    result = CliRunner().invoke(cli_module.main, ["deploy"])

    assert result.exit_code == 0
    assert captured["config_path"] == "deploy.yml"
    assert captured["calls"] == [("deploy", (), {})]


def test_cli_config_option_and_failing_exit_code(tmp_path, monkeypatch):
    captured = install_fake_deployer(monkeypatch, exit_code=1)
    config_file = tmp_path / "staging.yml"

    result = CliRunner().invoke(cli_module.main, ["-c", str(config_file), "rollback"])

    assert result.exit_code == 1
    assert captured["config_path"] == str(config_file)
    assert captured["calls"] == [("rollback", (), {})]


def test_cli_run_joins_arguments_and_passes_options_through(monkeypatch):
    captured = install_fake_deployer(monkeypatch)

    result = CliRunner().invoke(cli_module.main, ["run", "bin/my_app", "remote", "--sname", "x"])

    assert result.exit_code == 0
    assert captured["calls"] == [("run_command", ("bin/my_app remote --sname x",), {})]


def test_cli_run_requires_a_command(monkeypatch):
    install_fake_deployer(monkeypatch)

    result = CliRunner().invoke(cli_module.main, ["run"])

    assert result.exit_code == 2


def test_cli_logs_options(monkeypatch):
    captured = install_fake_deployer(monkeypatch)

    result = CliRunner().invoke(cli_module.main, ["logs", "-f", "-n", "20"])

    assert result.exit_code == 0
    assert captured["calls"] == [("logs", (), {"follow": True, "lines": 20})]


def test_cli_logs_defaults_to_last_hundred_lines(monkeypatch):
    captured = install_fake_deployer(monkeypatch)

    CliRunner().invoke(cli_module.main, ["logs"])

    assert captured["calls"] == [("logs", (), {"follow": False, "lines": 100})]


def test_cli_secrets_subcommands(monkeypatch):
    captured = install_fake_deployer(monkeypatch)
    runner = CliRunner()

    assert runner.invoke(cli_module.main, ["secrets", "init"]).exit_code == 0
    assert runner.invoke(cli_module.main, ["secrets", "edit"]).exit_code == 0
    assert [call[0] for call in captured["calls"]] == ["secrets_init", "secrets_edit"]


def test_cli_setup_command(monkeypatch):
    captured = install_fake_deployer(monkeypatch)

    result = CliRunner().invoke(cli_module.main, ["--verbose", "setup"])

    assert result.exit_code == 0
    assert captured["calls"] == [("setup", (), {})]

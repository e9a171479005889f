import pytest

from jailship.errors import ConfigError
from jailship.services.config_loader import ConfigLoader

MINIMAL = """\
app: my_app
server:
  host: jails.example.com
app_jail:
  base_path: /usr/local/jails
  freebsd_version: 14.2-RELEASE
"""


def write_config(tmp_path, text):
    config_file = tmp_path / "deploy.yml"
    config_file.write_text(text, encoding="utf-8")
    return str(config_file)


def test_config_loader_applies_defaults(tmp_path):
    config = ConfigLoader().load(write_config(tmp_path, MINIMAL))

    assert config.app == "my_app"
    assert config.server.user == "root"
    assert config.server.port == 22
    assert config.app_jail.port == 4000
    assert config.domain is None
    assert config.health_check.attempts == 10
    assert config.health_check.interval == 2.0
    assert config.release.build_commands == (("mix", "release", "--overwrite"),)
    assert config.release.builder == "remote"
    assert config.release.build_env == {"MIX_ENV": "prod"}
    assert config.accessories == []
    assert config.env == {}


def test_config_loader_reads_full_configuration(tmp_path):
    text = MINIMAL + (
        "domain: example.com\n"
        "health_check:\n  path: /health\n  attempts: 3\n  interval: 0.5\n"
        "release:\n  builder: local\n  build_commands:\n    - [mix, release]\n  start_command: bin/{app} start\n"
        "accessories:\n"
        "  db:\n    type: postgresql\n    version: 16\n    volume: /data/pg:/var/db/postgres\n"
        "    database: blog\n"
        "env:\n  PHX_HOST: example.com\n  POOL_SIZE: 10\n"
    )

    config = ConfigLoader().load(write_config(tmp_path, text))

    assert config.domain == "example.com"
    assert config.health_check.path == "/health"
    assert config.health_check.attempts == 3
    assert config.release.build_commands == (("mix", "release"),)
    assert config.release.builder == "local"
    assert config.release.prepare_commands == (("mix", "assets.deploy"),)
    assert config.render_release_value(config.release.start_command) == "bin/my_app start"
    accessory = config.postgresql_accessory()
    assert accessory.version == "16"
    assert accessory.port == 5432
    assert accessory.database == "blog"
    assert config.env == {"PHX_HOST": "example.com", "POOL_SIZE": "10"}


def test_config_loader_rejects_unknown_keys(tmp_path):
    with pytest.raises(ConfigError, match="Unknown configuration keys: unknown_key"):
        ConfigLoader().load(write_config(tmp_path, MINIMAL + "unknown_key: true\n"))


def test_config_loader_rejects_unknown_nested_keys(tmp_path):
    text = MINIMAL.replace("  host: jails.example.com\n", "  host: jails.example.com\n  hostname: x\n")

    with pytest.raises(ConfigError, match="server.hostname"):
        ConfigLoader().load(write_config(tmp_path, text))


def test_config_loader_reports_missing_key_path(tmp_path):
    text = MINIMAL.replace("  base_path: /usr/local/jails\n", "")

    with pytest.raises(ConfigError, match="app_jail.base_path"):
        ConfigLoader().load(write_config(tmp_path, text))


def test_config_loader_requires_server_section(tmp_path):
    text = "app: my_app\napp_jail:\n  base_path: /j\n  freebsd_version: 14.2-RELEASE\n"

    with pytest.raises(ConfigError, match="Missing required key: server"):
        ConfigLoader().load(write_config(tmp_path, text))


def test_config_loader_rejects_invalid_app_name(tmp_path):
    with pytest.raises(ConfigError, match="Invalid app name"):
        ConfigLoader().load(write_config(tmp_path, MINIMAL.replace("app: my_app", "app: My-App")))


def test_config_loader_rejects_bad_volume(tmp_path):
    text = MINIMAL + "accessories:\n  db:\n    type: postgresql\n    version: '16'\n    volume: /data/pg\n"

    with pytest.raises(ConfigError, match="Invalid volume format"):
        ConfigLoader().load(write_config(tmp_path, text))


def test_config_loader_rejects_unsupported_accessory(tmp_path):
    text = MINIMAL + "accessories:\n  cache:\n    type: redis\n    version: '7'\n    volume: /a:/b\n"

    with pytest.raises(ConfigError, match="Unsupported type 'redis'"):
        ConfigLoader().load(write_config(tmp_path, text))


def test_config_loader_reports_missing_file(tmp_path):
    with pytest.raises(ConfigError, match="Config file not found"):
        ConfigLoader().load(str(tmp_path / "missing.yml"))


def test_config_loader_rejects_non_mapping_root(tmp_path):
    with pytest.raises(ConfigError, match="YAML mapping"):
        ConfigLoader().load(write_config(tmp_path, "- a\n- b\n"))


def test_config_loader_rejects_unknown_builder(tmp_path):
    text = MINIMAL + "release:\n  builder: docker\n"

    with pytest.raises(ConfigError, match="release.builder must be one of: remote, local \\(got: docker\\)"):
        ConfigLoader().load(write_config(tmp_path, text))

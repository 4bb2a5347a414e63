import os
from pathlib import Path

import pytest
import yaml

from brig.config import BrigConfig, get_brig_home, load_config, load_config_or_default
from brig.errors import ConfigError


def write_config(home, data):
    home.mkdir(parents=True, exist_ok=True)
    (home / "config.yaml").write_text(yaml.safe_dump(data) if isinstance(data, dict) else data)


def test_brig_home_from_env(isolated_brig_home):
    assert get_brig_home() == isolated_brig_home


def test_brig_home_default(monkeypatch):
    monkeypatch.delenv("BRIG_HOME")
    assert get_brig_home() == Path("~/.config/brig").expanduser()


def test_load_config(isolated_brig_home):
    write_config(isolated_brig_home, {"socket": "unix:///tmp/docker.sock", "port_offset": 9000})

    config = load_config()

    assert config.socket == "unix:///tmp/docker.sock"
    assert config.port_offset == 9000
    assert config.log_level == "ERROR"


def test_missing_config(isolated_brig_home):
    with pytest.raises(FileNotFoundError, match="brig init"):
        load_config()
    assert load_config_or_default() == BrigConfig()


def test_invalid_yaml(isolated_brig_home):
    write_config(isolated_brig_home, "socket: [unclosed")
    with pytest.raises(ConfigError, match="Invalid YAML"):
        load_config()


def test_unknown_keys(isolated_brig_home):
    write_config(isolated_brig_home, {"project": "lifeos"})
    with pytest.raises(ConfigError, match="Unknown config keys"):
        load_config()


@pytest.mark.parametrize("data,message", [
    ({"port_offset": 80}, "port_offset"),
    ({"poll_interval": -1}, "poll_interval"),
    ({"log_level": "LOUD"}, "log_level"),
    ({"log_format": "xml"}, "log_format"),
])
def test_validation(data, message):
    with pytest.raises(ConfigError, match=message):
        BrigConfig.from_dict(data)


def test_env_file_loaded(isolated_brig_home, tmp_path):
    env_file = tmp_path / "brig.env"
    env_file.write_text("BRIG_TEST_DOTENV=loaded\n")
    write_config(isolated_brig_home, {"env_file": str(env_file)})

    try:
        load_config()
        assert os.environ["BRIG_TEST_DOTENV"] == "loaded"
    finally:
        os.environ.pop("BRIG_TEST_DOTENV", None)


def test_round_trip():
    config = BrigConfig(socket="unix:///x", cache_dir="/tmp/c")
    assert BrigConfig.from_dict(config.to_dict()) == config

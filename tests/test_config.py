"""Tests for configuration loading and validation."""

import pytest
import yaml

from pyDoorSensors.config import (
    ACCESS_TOKEN_ENV,
    DEFAULT_BASE_URL,
    ConfigurationError,
    DoorSensorConfig,
    load_config,
)


D1 = "1e0031000447343138333038"
D2 = "2a003b000447343233323032"


@pytest.fixture(autouse=True)
def _no_token_env(monkeypatch):
    monkeypatch.delenv(ACCESS_TOKEN_ENV, raising=False)


@pytest.fixture
def defaults_file(tmp_path):
    path = tmp_path / "defaults.yaml"
    path.write_text(yaml.safe_dump({
        "particle": {"base_url": "https://api.example.test"},
        "devices": [
            {"id": D1, "name": "Toilet 1   "},
            {"id": D2, "name": "Toilet 2"},
        ],
        "timing": {"reconnect_delay": 3.0},
    }), encoding="utf-8")
    return path


@pytest.fixture
def local_file(tmp_path):
    path = tmp_path / "local.yaml"
    path.write_text(yaml.safe_dump({
        "particle": {"access_token": "local-token"},
        "timing": {"reconnect_delay": 5},
    }), encoding="utf-8")
    return path


# ---------------------------------------------------------------------------
# from_dict
# ---------------------------------------------------------------------------

class TestFromDict:

    def test_device_list_keeps_order(self):
        config = DoorSensorConfig.from_dict({
            "devices": [{"id": D2, "name": "B"}, {"id": D1, "name": "A"}],
        })
        assert list(config.devices) == [D2, D1]
        assert config.devices[D1] == "A"

    def test_device_mapping(self):
        config = DoorSensorConfig.from_dict({"devices": {D1: "A", D2: None}})
        assert config.devices == {D1: "A", D2: D2}

    def test_defaults(self):
        config = DoorSensorConfig.from_dict({})
        assert config.base_url == DEFAULT_BASE_URL
        assert config.reconnect_delay == 3.0
        assert config.devices == {}
        assert config.access_token == ""

    def test_timing_values(self):
        config = DoorSensorConfig.from_dict({
            "timing": {"reconnect_delay": "1.5", "request_timeout": 4},
        })
        assert config.reconnect_delay == 1.5
        assert config.request_timeout == 4.0

    def test_bad_timing_value(self):
        with pytest.raises(ConfigurationError):
            DoorSensorConfig.from_dict({"timing": {"reconnect_delay": "soon"}})

    def test_device_entry_without_id(self):
        with pytest.raises(ConfigurationError):
            DoorSensorConfig.from_dict({"devices": [{"name": "x"}]})

    def test_duplicate_device_id(self):
        with pytest.raises(ConfigurationError):
            DoorSensorConfig.from_dict({"devices": [{"id": D1}, {"id": D1}]})

    def test_devices_wrong_type(self):
        with pytest.raises(ConfigurationError):
            DoorSensorConfig.from_dict({"devices": "D1"})

    def test_particle_wrong_type(self):
        with pytest.raises(ConfigurationError):
            DoorSensorConfig.from_dict({"particle": ["token"]})


# ---------------------------------------------------------------------------
# validate
# ---------------------------------------------------------------------------

class TestValidate:

    def _complete(self, **overrides):
        values = dict(devices={D1: "A"}, access_token="t")
        values.update(overrides)
        return DoorSensorConfig(**values)

    def test_complete_config_passes(self):
        config = self._complete()
        config.validate()
        assert config.is_complete

    def test_missing_token(self):
        with pytest.raises(ConfigurationError, match="token"):
            self._complete(access_token="").validate()

    def test_missing_base_url(self):
        with pytest.raises(ConfigurationError, match="base URL"):
            self._complete(base_url="").validate()

    def test_no_devices(self):
        config = self._complete(devices={})
        with pytest.raises(ConfigurationError, match="devices"):
            config.validate()
        assert not config.is_complete

    def test_blank_device_id(self):
        with pytest.raises(ConfigurationError):
            self._complete(devices={" ": "A"}).validate()

    def test_non_positive_delay(self):
        with pytest.raises(ConfigurationError, match="reconnect_delay"):
            self._complete(reconnect_delay=0).validate()

    def test_repr_hides_token(self):
        assert "secret" not in repr(self._complete(access_token="secret"))


# ---------------------------------------------------------------------------
# load_config
# ---------------------------------------------------------------------------

class TestLoadConfig:

    def test_local_overrides_defaults(self, defaults_file, local_file):
        config = load_config(defaults_file, local_file)
        assert list(config.devices) == [D1, D2]
        assert config.base_url == "https://api.example.test"
        assert config.access_token == "local-token"
        assert config.reconnect_delay == 5.0
        config.validate()

    def test_missing_local_file_skipped(self, defaults_file, tmp_path):
        config = load_config(defaults_file, tmp_path / "local.yaml")
        assert config.access_token == ""
        assert len(config.devices) == 2

    def test_no_files_gives_defaults(self, tmp_path):
        config = load_config(tmp_path / "missing.yaml")
        assert config.devices == {}

    def test_env_overrides_token(self, defaults_file, local_file, monkeypatch):
        monkeypatch.setenv(ACCESS_TOKEN_ENV, "env-token")
        assert load_config(defaults_file, local_file).access_token == "env-token"

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("", encoding="utf-8")
        assert load_config(path).devices == {}

    def test_corrupt_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("devices: [unclosed", encoding="utf-8")
        with pytest.raises(ConfigurationError):
            load_config(path)

    def test_top_level_list_rejected(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n", encoding="utf-8")
        with pytest.raises(ConfigurationError, match="mapping"):
            load_config(path)

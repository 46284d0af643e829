import pytest

from gofka.config import ConfigError
from gofka.visualizer.config import (
    ServerSettings,
    Settings,
    VisualizerConfigError,
    load_config,
    validate,
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("SERVER_ADDRESS", "SERVER_GRPC_PORT", "SERVER_WEB_PORT", "VISUALIZER_ENABLED"):
        monkeypatch.delenv(name, raising=False)


def write(tmp_path, text):
    path = tmp_path / "gofka.yaml"
    path.write_text(text)
    return path


def test_defaults(tmp_path):
    settings = load_config(write(tmp_path, ""))
    assert settings.server.address == "localhost"
    assert settings.server.web_port == 42069
    assert settings.server.grpc_port == 42169
    assert settings.visualizer.enabled is False


def test_file_values(tmp_path):
    text = "server:\n  address: vis\n  grpc_port: 5000\n  web_port: 5001\nvisualizer:\n  enabled: true\n"
    settings = load_config(write(tmp_path, text))
    assert settings.server == ServerSettings(address="vis", grpc_port=5000, web_port=5001)
    assert settings.visualizer.enabled is True


def test_environment_override(tmp_path, monkeypatch):
    monkeypatch.setenv("SERVER_WEB_PORT", "8080")
    settings = load_config(write(tmp_path, ""))
    assert settings.server.web_port == 8080


def test_same_ports_rejected(tmp_path):
    text = "server:\n  grpc_port: 5000\n  web_port: 5000\n"
    with pytest.raises(VisualizerConfigError, match="must be different"):
        load_config(write(tmp_path, text))


def test_port_out_of_range(tmp_path):
    with pytest.raises(VisualizerConfigError, match="server.web_port must be between"):
        load_config(write(tmp_path, "server:\n  web_port: 70000\n"))


def test_zero_port_is_missing():
    settings = Settings(server=ServerSettings(address="a", grpc_port=0, web_port=1))
    with pytest.raises(VisualizerConfigError, match="server.grpc_port is required"):
        validate(settings)


def test_empty_address(tmp_path, monkeypatch):
    monkeypatch.setenv("SERVER_ADDRESS", "")
    with pytest.raises(VisualizerConfigError, match="server.address is required"):
        load_config(write(tmp_path, ""))


def test_missing_file_is_config_error(tmp_path):
    with pytest.raises(ConfigError, match="failed to read config file"):
        load_config(tmp_path / "absent.yaml")
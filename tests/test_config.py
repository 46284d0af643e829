import pytest

from gofka.config import (
    ClusterConfig,
    Config,
    ConfigError,
    KraftConfig,
    ServerConfig,
    load_config,
    parse_duration,
    validate,
)

_ENV_NAMES = [
    "SERVER_NODE_ID",
    "SERVER_ROLES",
    "SERVER_ADDRESS",
    "SERVER_PORT",
    "SERVER_MAX_RECONNECTION_RETRIES",
    "SERVER_INITIAL_BACKOFF",
    "KRAFT_TIMEOUT",
    "KRAFT_GRACE_PERIOD",
    "BROKER_CONTROLLER_ADDRESS",
    "BROKER_HEARTBEAT_INTERVAL",
    "BROKER_METADATA_INTERVAL",
    "BROKER_MAX_LAG_TIMEOUT",
    "BROKER_REPLICA_FETCH_INTERVAL",
    "BROKER_CONSUMER_GROUP_JOINING_DURATION",
    "VISUALIZER_ENABLED",
    "VISUALIZER_ADDRESS",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


def write(tmp_path, text):
    path = tmp_path / "gofka.yaml"
    path.write_text(text)
    return path


MINIMAL = """
server:
  node_id: n1
  roles: [controller]
"""


def test_parse_duration_units_agree():
    assert parse_duration("1s") == 1.0
    assert parse_duration("1h30m") == parse_duration("90m")
    assert parse_duration("250ms") == parse_duration("0.25s")
    assert parse_duration("1000us") == parse_duration("1ms")
    assert parse_duration("1µs") == parse_duration("1us")


def test_parse_duration_sign_and_zero():
    assert parse_duration("-2s") == -parse_duration("2s")
    assert parse_duration("0") == 0.0


def test_parse_duration_numbers_are_nanoseconds():
    assert parse_duration(1_000_000_000) == parse_duration("1s")


@pytest.mark.parametrize("bad", ["abc", "5", "", "-", "1x", "s", True])
def test_parse_duration_rejects_invalid(bad):
    with pytest.raises(ConfigError):
        parse_duration(bad)


def test_load_minimal_uses_defaults(tmp_path):
    config = load_config(write(tmp_path, MINIMAL))
    assert config.server.node_id == "n1"
    assert config.server.roles == ["controller"]
    assert config.server.address == "localhost"
    assert config.server.port == 9092
    assert config.server.initial_backoff == parse_duration("250ms")
    assert config.kraft.timeout == parse_duration("5s")
    assert config.kraft.grace_period == parse_duration("10s")
    assert config.broker.heartbeat_interval == parse_duration("250ms")
    assert config.broker.replica.fetch_interval == parse_duration("750ms")
    assert config.broker.consumer_group.joining_duration == parse_duration("750ms")
    assert config.visualizer.enabled is False


def test_load_full_file(tmp_path):
    text = """
server:
  node_id: raft-0
  roles: [controller, broker]
  address: node0
  port: 9100
  max_reconnection_retries: 3
  cluster:
    peers:
      raft-0: node0:9100
      raft-1: node1:9100
broker:
  controller_address: node0:9100
  max_lag_timeout: 1000000000
visualizer:
  enabled: true
  address: vis:42169
"""
    config = load_config(write(tmp_path, text))
    assert config.server.port == 9100
    assert config.server.max_retries == 3
    assert config.server.cluster.peers == {"raft-0": "node0:9100", "raft-1": "node1:9100"}
    assert config.broker.controller_address == "node0:9100"
    assert config.broker.max_lag_timeout == parse_duration("1s")
    assert config.visualizer.enabled is True
    assert config.visualizer.address == "vis:42169"


def test_environment_overrides_file(tmp_path, monkeypatch):
    monkeypatch.setenv("SERVER_PORT", "9200")
    monkeypatch.setenv("SERVER_NODE_ID", "from-env")
    config = load_config(write(tmp_path, MINIMAL))
    assert config.server.port == 9200
    assert config.server.node_id == "from-env"


def test_environment_list_is_comma_separated(tmp_path, monkeypatch):
    monkeypatch.setenv("SERVER_ROLES", "broker,controller")
    monkeypatch.setenv("BROKER_CONTROLLER_ADDRESS", "ctl:9092")
    text = MINIMAL + "broker:\n  controller_address: x\n"
    config = load_config(write(tmp_path, text))
    assert config.server.roles == ["broker", "controller"]
    assert config.broker.controller_address == "ctl:9092"


def test_empty_environment_value_counts(tmp_path, monkeypatch):
    monkeypatch.setenv("SERVER_ADDRESS", "")
    with pytest.raises(ConfigError, match="server.address is required"):
        load_config(write(tmp_path, MINIMAL))


def test_missing_node_id(tmp_path):
    with pytest.raises(ConfigError, match="server.node_id is required"):
        load_config(write(tmp_path, "server:\n  port: 9092\n"))


def test_broker_requires_controller_address(tmp_path):
    text = "server:\n  node_id: n1\n  roles: [broker]\n"
    with pytest.raises(ConfigError, match="broker.controller_address is required"):
        load_config(write(tmp_path, text))


def test_port_out_of_range(tmp_path):
    with pytest.raises(ConfigError, match="server.port"):
        load_config(write(tmp_path, MINIMAL + "  port: 70000\n"))


def test_kraft_timeout_must_be_positive(tmp_path):
    with pytest.raises(ConfigError, match="kraft.timeout must be positive"):
        load_config(write(tmp_path, MINIMAL + "kraft:\n  timeout: 0s\n"))


def test_bad_port_value(tmp_path):
    with pytest.raises(ConfigError, match="server.port"):
        load_config(write(tmp_path, MINIMAL + "  port: lots\n"))


def test_missing_file(tmp_path):
    with pytest.raises(ConfigError, match="failed to read config file"):
        load_config(tmp_path / "absent.yaml")


def test_invalid_yaml(tmp_path):
    with pytest.raises(ConfigError, match="failed to read config file"):
        load_config(write(tmp_path, "server: [unclosed\n"))


def test_validate_direct():
    config = Config(
        server=ServerConfig(node_id="n1", address="host", port=1, cluster=ClusterConfig()),
        kraft=KraftConfig(timeout=1.0, grace_period=0.0),
    )
    with pytest.raises(ConfigError, match="kraft.grace_period must be positive"):
        validate(config)
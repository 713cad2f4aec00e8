import socket

import pytest

from portdump import (
    CaptureSettings,
    ConfigError,
    ListenerManager,
    Network,
    PortSpec,
    Service,
    Settings,
    UnsupportedProtocolError,
    parse_target,
)


@pytest.mark.parametrize("n", [1, 22, 8080, 65535])
def test_bare_number_defaults_to_tcp(n):
    assert parse_target(str(n)) == PortSpec(n, Network.TCP)


@pytest.mark.parametrize("proto", ["tcp", "tcp4", "tcp6"])
def test_stream_protocol_suffix_is_kept(proto):
    spec = parse_target(f"2323/{proto}")
    assert spec.port == 2323
    assert spec.network.value == proto
    assert str(spec) == f"2323/{proto}"


def test_service_name_uses_protocol_lookup(monkeypatch):
    seen = []

    def fake_getservbyname(name, proto):
        seen.append((name, proto))
        return 22

    monkeypatch.setattr(socket, "getservbyname", fake_getservbyname)
    assert parse_target("ssh") == PortSpec(22, Network.TCP)
    assert parse_target("ssh/udp6") == PortSpec(22, Network.UDP6)
    assert seen == [("ssh", "tcp"), ("ssh", "udp")]


@pytest.mark.parametrize("token", ["not-a-port", "", "0", "65536", "-1", "80/sctp", "80/tcp/extra"])
def test_unresolvable_targets_are_config_errors(token):
    with pytest.raises(ConfigError):
        parse_target(token)


def test_error_names_value_and_protocol():
    with pytest.raises(ConfigError, match='port "not-a-port" proto "tcp" invalid'):
        parse_target("not-a-port")


def test_bad_target_stops_service_before_any_listener(tmp_path):
    settings = Settings(targets=("8080", "not-a-port"), logs=str(tmp_path))
    with pytest.raises(ConfigError):
        Service(settings, log=None)


@pytest.mark.parametrize("proto", ["udp", "udp4", "udp6"])
def test_datagram_protocol_is_rejected_at_construction(proto):
    spec = parse_target(f"5353/{proto}")
    with pytest.raises(UnsupportedProtocolError):
        ListenerManager(spec, host="127.0.0.1", settings=CaptureSettings(logs_dir="logs"), log=None)


def test_service_rejects_datagram_target(tmp_path):
    with pytest.raises(UnsupportedProtocolError):
        Service(Settings(targets=("8080", "53/udp"), logs=str(tmp_path)), log=None)


def test_network_families():
    assert Network.TCP.family == socket.AF_UNSPEC
    assert Network.TCP4.family == socket.AF_INET
    assert Network.TCP6.family == socket.AF_INET6
    assert Network.TCP6.is_stream
    assert not Network.UDP.is_stream

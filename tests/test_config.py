import json

import pytest

from p2pfwd.config import ClientSettings, ConfigValidationError, parse_endpoint, parse_port


@pytest.mark.parametrize("text,expected", [("0", 0), ("80", 80), ("65535", 65535), ("008", 8)])
def test_parse_port_accepts_uint16(text, expected):
    assert parse_port(text) == expected


@pytest.mark.parametrize("text", ["", "65536", "-1", "+1", " 80", "80 ", "1_000", "٣", "0x50"])
def test_parse_port_rejects(text):
    with pytest.raises(ConfigValidationError):
        parse_port(text)


def test_parse_endpoint():
    assert parse_endpoint("10.0.0.5:6000") == ("10.0.0.5", 6000)
    with pytest.raises(ConfigValidationError):
        parse_endpoint("10.0.0.5")


def test_peer_id_format():
    assert ClientSettings(name="bob", namespace="lab").peer_id == "bob@lab"


def test_from_file_missing_returns_defaults(tmp_path):
    settings = ClientSettings.from_file(tmp_path / "nope.json")
    assert settings.name == "alice"
    assert settings.tcp_ports == []


def test_from_file_loads_known_and_extra_fields(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(
        json.dumps(
            {
                "name": "bob",
                "namespace": "lab",
                "tcp_ports": [80],
                "udp_ports": [53],
                "connect": ["alice@lab"],
                "peers": {"alice@lab": "127.0.0.1:6001"},
                "inbound_backlog": 8,
            }
        ),
        encoding="utf-8",
    )

    settings = ClientSettings.from_file(path)

    assert settings.peer_id == "bob@lab"
    assert settings.tcp_ports == [80]
    assert settings.connect == ["alice@lab"]
    assert settings.extra == {"inbound_backlog": 8}
    assert settings.config_file == path


@pytest.mark.parametrize(
    "payload",
    [
        {"name": ""},
        {"name": "a" * 65},
        {"namespace": "with space"},
        {"listen_port": 70000},
        {"tcp_ports": [-1]},
        {"ttl_seconds": 0},
        {"peers": {"x@y": "nohostport"}},
    ],
)
def test_from_file_validates(tmp_path, payload):
    path = tmp_path / "config.json"
    path.write_text(json.dumps(payload), encoding="utf-8")
    with pytest.raises(ConfigValidationError):
        ClientSettings.from_file(path)


def test_to_dict_includes_peer_id():
    data = ClientSettings(name="bob", namespace="lab", tcp_ports=[22]).to_dict()
    assert data["peer_id"] == "bob@lab"
    assert data["tcp_ports"] == [22]

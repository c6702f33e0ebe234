import socket
import threading

import pytest

from p2pfwd.config import ClientSettings
from p2pfwd.direct import DirectForwarder
from p2pfwd.forwarder import ForwarderError
from p2pfwd.relay import recv_json
from p2pfwd.rendezvous_connection import RendezvousClient, RendezvousError


@pytest.fixture
def settings():
    return ClientSettings(name="alice", namespace="lab", rendezvous_host="rdv.local")


def _fake_server(responses, requests):
    def _send(payload):
        requests.append(payload)
        return responses.pop(0)

    return _send


def test_disabled_without_host():
    client = RendezvousClient(ClientSettings())
    assert not client.enabled
    with pytest.raises(RendezvousError):
        list(client.discover_peers())


def test_resolve_picks_matching_peer(settings, monkeypatch):
    requests = []
    client = RendezvousClient(settings)
    peers = [
        {"name": "bob", "namespace": "lab", "ip": "10.0.0.2", "port": 6000},
        {"name": "carol", "namespace": "lab", "ip": "10.0.0.3", "port": "6001"},
        {"namespace": "lab"},
    ]
    monkeypatch.setattr(client, "_send_request", _fake_server([{"status": "OK", "peers": peers}], requests))

    peer = client.resolve("carol@lab")

    assert (peer.address, peer.port) == ("10.0.0.3", 6001)
    assert requests == [{"type": "DISCOVER", "namespace": "lab"}]


def test_register_and_unregister(settings, monkeypatch):
    requests = []
    client = RendezvousClient(settings)
    monkeypatch.setattr(client, "_send_request", _fake_server([{"status": "OK"}, {"status": "OK"}], requests))

    client.register(port=6000)
    assert client.is_registered()
    client.unregister(port=6000)

    assert not client.is_registered()
    assert [r["type"] for r in requests] == ["REGISTER", "UNREGISTER"]
    assert requests[0]["name"] == "alice" and requests[0]["port"] == 6000


def test_register_error_status(settings, monkeypatch):
    client = RendezvousClient(settings)
    monkeypatch.setattr(client, "_send_request", _fake_server([{"status": "ERROR"}], []))
    with pytest.raises(RendezvousError):
        client.register(port=6000)


def test_forwarder_resolves_through_rendezvous(settings, monkeypatch):
    forwarder = DirectForwarder(settings)
    peers = [{"name": "bob", "namespace": "lab", "ip": "10.0.0.2", "port": 6000}]
    monkeypatch.setattr(
        forwarder.rendezvous, "_send_request", _fake_server([{"status": "OK", "peers": peers}], [])
    )
    assert forwarder.resolve("bob@lab").address == "10.0.0.2"


def test_forwarder_reports_rendezvous_failure(settings, monkeypatch):
    forwarder = DirectForwarder(settings)

    def _down(payload):
        raise RendezvousError("sem rede")

    monkeypatch.setattr(forwarder.rendezvous, "_send_request", _down)
    with pytest.raises(ForwarderError):
        forwarder.resolve("bob@lab")


def test_static_peers_take_precedence(settings, monkeypatch):
    settings.peers["bob@lab"] = "192.168.0.9:7000"
    forwarder = DirectForwarder(settings)
    monkeypatch.setattr(forwarder.rendezvous, "_send_request", lambda payload: pytest.fail("rendezvous usado"))
    peer = forwarder.resolve("bob@lab")
    assert (peer.address, peer.port) == ("192.168.0.9", 7000)


@pytest.fixture
def rendezvous_server():
    """Servidor de uma conexão por requisição; responde com a próxima linha da fila."""

    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.bind(("127.0.0.1", 0))
    server.listen(4)
    replies, requests = [], []

    def _serve():
        while True:
            try:
                conn, _ = server.accept()
            except OSError:
                return
            with conn:
                requests.append(recv_json(conn))
                conn.sendall(replies.pop(0))

    threading.Thread(target=_serve, daemon=True).start()
    yield server.getsockname()[1], replies, requests
    server.close()


def _local_settings(port):
    return ClientSettings(name="alice", namespace="lab", rendezvous_host="127.0.0.1", rendezvous_port=port)


def test_register_over_the_wire(rendezvous_server):
    port, replies, requests = rendezvous_server
    replies.append(b'{"status":"OK"}\n')
    client = RendezvousClient(_local_settings(port))

    client.register(port=6000)

    assert client.is_registered()
    assert requests == [{"type": "REGISTER", "namespace": "lab", "name": "alice", "port": 6000, "ttl": 7200}]


def test_garbage_reply_is_rendezvous_error(rendezvous_server):
    port, replies, _ = rendezvous_server
    replies.append(b"not json\n")
    client = RendezvousClient(_local_settings(port))

    with pytest.raises(RendezvousError):
        client.register(port=6000)
    assert not client.is_registered()

from typing import Dict, List, Tuple

import pytest

from p2pfwd.forwarder import Forwarder, ForwarderError
from p2pfwd.registry import ResourceRegistry


class CancelSpy:
    """Capacidade de cancelamento que registra cada chamada."""

    def __init__(self, label: str, journal: List[str]) -> None:
        self.label = label
        self.journal = journal
        self.calls = 0

    def __call__(self) -> None:
        self.calls += 1
        self.journal.append(self.label)


class StubForwarder(Forwarder):
    def __init__(self, identity: str = "me@test") -> None:
        self._identity = identity
        self.journal: List[str] = []
        self.cancels: Dict[str, CancelSpy] = {}
        self.failing_peers = set()
        self.failing_ports = set()
        self.calls: List[Tuple[str, ...]] = []

    @property
    def id(self) -> str:
        return self._identity

    def open_port(self, proto, port):
        self.calls.append(("open", proto, port))
        if (proto, port) in self.failing_ports:
            raise ForwarderError(f"porta {proto}:{port} ocupada")
        spy = CancelSpy(f"{proto}:{port}", self.journal)
        self.cancels[f"{proto}:{port}"] = spy
        return spy

    def connect(self, peer_id):
        self.calls.append(("connect", peer_id))
        if peer_id in self.failing_peers:
            raise ForwarderError(f"peer {peer_id} inalcançável")
        spy = CancelSpy(f"peer:{peer_id}", self.journal)
        self.cancels[f"peer:{peer_id}"] = spy
        return "127.89.1.2", spy


@pytest.fixture
def forwarder():
    return StubForwarder()


@pytest.fixture
def registry():
    return ResourceRegistry()

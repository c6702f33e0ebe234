"""Shared state models for the p2pfwd session runtime."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable


Cancel = Callable[[], None]


class SessionPhase(str, Enum):
    """Fases do ciclo de vida de uma sessão."""

    INITIALIZING = "INITIALIZING"
    RUNNING = "RUNNING"
    SHUTTING_DOWN = "SHUTTING_DOWN"
    TERMINATED = "TERMINATED"


@dataclass(slots=True)
class PeerLink:
    """Conexão ativa com um peer registrada na sessão."""

    listen_address: str  # endereço local onde as portas do peer ficam acessíveis
    cancel: Cancel


@dataclass(slots=True)
class PeerInfo:
    """Endpoint de controle de um peer, resolvido a partir do seu id."""

    peer_id: str
    address: str
    port: int
    namespace: str = ""

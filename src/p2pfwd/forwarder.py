"""Forwarder boundary consumed by the session core.

O ``Forwarder`` expõe apenas três operações: identidade local, abrir uma porta
local para os peers e conectar a um peer. Cada operação bem-sucedida devolve
uma capacidade de cancelamento (callable sem argumentos) que libera o recurso.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Tuple, Union

from .state import Cancel


logger = logging.getLogger(__name__)


class ForwarderError(RuntimeError):
    """Falha ao abrir porta, conectar a um peer ou iniciar o forwarder."""


def _log_info(message: str) -> None:
    logger.info("%s", message)


def _log_error(error: Union[BaseException, str]) -> None:
    logger.error("%s", error)


@dataclass(slots=True)
class EventHooks:
    """Hooks globais de info/erro do forwarder, registrados uma vez na partida."""

    on_info: Callable[[str], None] = field(default=_log_info)
    on_error: Callable[[Union[BaseException, str]], None] = field(default=_log_error)


class Forwarder(ABC):
    """Contrato mínimo usado pelo ``CommandDispatcher`` e pela ``Session``."""

    @property
    @abstractmethod
    def id(self) -> str:
        """Identidade deste processo perante os peers."""

    @abstractmethod
    def open_port(self, proto: str, port: int) -> Cancel:
        """Expõe ``proto:port`` local aos peers; levanta ``ForwarderError``."""

    @abstractmethod
    def connect(self, peer_id: str) -> Tuple[str, Cancel]:
        """Conecta ao peer e devolve ``(endereço_local, cancel)``."""

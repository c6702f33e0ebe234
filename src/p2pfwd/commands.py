"""Command dispatcher for the interactive p2pfwd session."""
from __future__ import annotations

import logging
from typing import List

from .args import split_args
from .config import ConfigValidationError, parse_port
from .forwarder import Forwarder, ForwarderError
from .registry import PROTOCOLS, ResourceRegistry
from .state import PeerLink

logger = logging.getLogger(__name__)

HELP_LINES = (
    "",
    "Comandos disponíveis:",
    "connect [ID]",
    "disconnect [ID]",
    "open [tcp|udp] [PORTA]",
    "close [tcp|udp] [PORTA]",
    "",
)


class CommandDispatcher:
    """Responsável pelos comandos ``connect``, ``disconnect``, ``open`` e ``close``.

    Não guarda estado próprio: toda alteração vai para o ``ResourceRegistry``
    da sessão, e ``execute`` só deve ser chamado pela thread da sessão.
    """

    def __init__(self, forwarder: Forwarder, registry: ResourceRegistry) -> None:
        self.forwarder = forwarder
        self.registry = registry

    def execute(self, line: str) -> None:
        args = split_args(line, 3)
        command = args[0].lower()
        params = args[1:]

        try:
            if command == "connect":
                self._cmd_connect(params)
            elif command == "disconnect":
                self._cmd_disconnect(params)
            elif command == "open":
                self._cmd_open(params)
            elif command == "close":
                self._cmd_close(params)
            else:
                self._cmd_help()
        except Exception:
            logger.exception("Erro executando %s", command)

    def connect(self, peer_id: str) -> bool:
        """Conecta a ``peer_id`` e registra a conexão; ``False`` em falha."""

        if not peer_id:
            logger.error("Uso: connect [ID]")
            return False
        if peer_id in self.registry.connections:
            logger.error("Já conectado a %s; use disconnect antes", peer_id)
            return False

        logger.info("Conectando a %s", peer_id)
        try:
            listen_address, cancel = self.forwarder.connect(peer_id)
        except (ForwarderError, OSError) as exc:
            logger.error("Falha ao conectar a %s: %s", peer_id, exc)
            return False

        self.registry.connections.put(peer_id, PeerLink(listen_address, cancel))
        logger.info("Portas de %s acessíveis em %s", peer_id, listen_address)
        return True

    def open_port(self, proto: str, port: int) -> bool:
        """Abre ``proto:port`` no forwarder e registra a binding."""

        proto = proto.lower()
        if proto not in PROTOCOLS:
            logger.error("Protocolo inválido: %r (use tcp ou udp)", proto)
            return False
        table = self.registry.ports(proto)
        if port in table:
            logger.error("Porta %s:%d já está aberta", proto, port)
            return False

        logger.info("Abrindo %s:%d", proto, port)
        try:
            cancel = self.forwarder.open_port(proto, port)
        except (ForwarderError, OSError) as exc:
            logger.error("Falha ao abrir %s:%d: %s", proto, port, exc)
            return False

        table.put(port, cancel)
        return True

    def _cmd_connect(self, params: List[str]) -> None:
        self.connect(params[0])

    def _cmd_disconnect(self, params: List[str]) -> None:
        peer_id = params[0]
        link = self.registry.connections.pop(peer_id)
        if link is None:
            logger.error("Você não está conectado a %r", peer_id)
            return

        logger.info("Desconectando de %s", peer_id)
        link.cancel()

    def _cmd_open(self, params: List[str]) -> None:
        proto, port_text = params
        try:
            port = parse_port(port_text)
        except ConfigValidationError as exc:
            logger.error("%s", exc)
            return
        self.open_port(proto, port)

    def _cmd_close(self, params: List[str]) -> None:
        proto, port_text = params[0].lower(), params[1]
        if proto not in PROTOCOLS:
            logger.error("Protocolo inválido: %r (use tcp ou udp)", proto)
            return
        try:
            port = parse_port(port_text)
        except ConfigValidationError as exc:
            logger.error("%s", exc)
            return

        cancel = self.registry.ports(proto).pop(port)
        if cancel is None:
            logger.error("A porta %s:%d não está aberta", proto, port)
            return

        logger.info("Fechando %s:%d", proto, port)
        cancel()

    def _cmd_help(self) -> None:
        for line in HELP_LINES:
            logger.info(line)

"""Session actor: owns the registry and serializes every command."""
from __future__ import annotations

import logging
import queue
import signal
import sys
import threading
from typing import Iterable, Optional, TextIO, Tuple

from .commands import CommandDispatcher
from .forwarder import Forwarder
from .registry import ResourceRegistry
from .state import Cancel, SessionPhase


logger = logging.getLogger(__name__)

_LINE = "line"
_SHUTDOWN = "shutdown"


class Session:
    """Loop único da sessão.

    Linhas do operador, comandos injetados e sinais de término chegam todos a
    uma mesma caixa de mensagens; ``run`` consome uma mensagem por vez, então
    o registro nunca é alterado por duas threads ao mesmo tempo.
    """

    def __init__(
        self,
        forwarder: Forwarder,
        global_cancel: Optional[Cancel] = None,
        registry: Optional[ResourceRegistry] = None,
    ) -> None:
        self.forwarder = forwarder
        self.global_cancel = global_cancel
        self.registry = registry or ResourceRegistry()
        self.dispatcher = CommandDispatcher(forwarder, self.registry)
        self.phase = SessionPhase.INITIALIZING
        # SimpleQueue.put é reentrante: pode ser chamado de um signal handler.
        self._mailbox: "queue.SimpleQueue[Tuple[str, object]]" = queue.SimpleQueue()
        self._reader_thread: Optional[threading.Thread] = None
        self._reader_stop = threading.Event()

    @property
    def identity(self) -> str:
        return self.forwarder.id

    def initialize(
        self,
        tcp_ports: Iterable[int] = (),
        udp_ports: Iterable[int] = (),
        connect_ids: Iterable[str] = (),
    ) -> None:
        """Abre os recursos pré-configurados; falhas são registradas e ignoradas."""

        logger.info("Inicializando...")
        logger.info("Seu id: %s", self.identity)

        for port in tcp_ports:
            self.dispatcher.open_port("tcp", port)
        for port in udp_ports:
            self.dispatcher.open_port("udp", port)
        for peer_id in connect_ids:
            self.dispatcher.connect(peer_id)

        logger.info("Inicialização concluída")
        self.dispatcher.execute("")
        self.phase = SessionPhase.RUNNING

    def submit(self, line: str) -> None:
        """Injeta um comando para ser executado pelo loop da sessão."""

        self._mailbox.put((_LINE, line))

    def request_shutdown(self, signum: Optional[int] = None, frame=None) -> None:
        self._mailbox.put((_SHUTDOWN, signum))

    def install_signal_handlers(self, signals: Iterable[int] = (signal.SIGINT, signal.SIGTERM)) -> None:
        for signum in signals:
            signal.signal(signum, self.request_shutdown)

    def start_reader(self, stream: Optional[TextIO] = None) -> None:
        """Inicia a thread que lê linhas do operador e as envia à sessão."""

        if self._reader_thread and self._reader_thread.is_alive():
            return
        source = stream if stream is not None else sys.stdin

        def _loop() -> None:
            while not self._reader_stop.is_set():
                try:
                    line = source.readline()
                except (OSError, UnicodeDecodeError, ValueError) as exc:
                    logger.error("Erro lendo comando: %s", exc)
                    self._reader_stop.wait(0.1)
                    continue
                if not line:
                    logger.debug("Fim da entrada de comandos")
                    return
                self.submit(line.rstrip("\r\n"))

        self._reader_stop.clear()
        self._reader_thread = threading.Thread(target=_loop, name="command-reader", daemon=True)
        self._reader_thread.start()

    def run(self) -> None:
        """Processa a caixa de mensagens até receber o pedido de término."""

        if self.phase is SessionPhase.INITIALIZING:
            self.phase = SessionPhase.RUNNING

        while self.phase is SessionPhase.RUNNING:
            kind, payload = self._mailbox.get()
            if kind == _LINE:
                self.dispatcher.execute(str(payload))
            elif kind == _SHUTDOWN:
                if payload is not None:
                    logger.debug("Sinal recebido: %s", payload)
                self.shutdown()

    def shutdown(self) -> None:
        """Cancelamento global, depois conexões, portas TCP e portas UDP."""

        if self.phase in (SessionPhase.SHUTTING_DOWN, SessionPhase.TERMINATED):
            return
        self.phase = SessionPhase.SHUTTING_DOWN
        logger.info("Encerrando...")
        self._reader_stop.set()

        if self.global_cancel is not None:
            self._invoke(self.global_cancel, "forwarder")
        for kind, key, cancel in self.registry.drain():
            self._invoke(cancel, f"{kind} {key}")

        self.phase = SessionPhase.TERMINATED

    @staticmethod
    def _invoke(cancel: Cancel, label: str) -> None:
        try:
            cancel()
        except Exception:
            logger.exception("Erro ao liberar %s", label)

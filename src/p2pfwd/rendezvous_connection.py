"""Optional rendezvous lookups: announce this forwarder and resolve peer ids."""
from __future__ import annotations

import logging
import socket
from contextlib import closing
from typing import Dict, Iterator, Optional

from .config import ClientSettings
from .relay import recv_json, send_json
from .state import PeerInfo


logger = logging.getLogger(__name__)


class RendezvousError(RuntimeError):
    """Erro genérico envolvendo interação com o rendezvous."""


class RendezvousClient:
    """Anuncia o servidor de controle e resolve ``name@namespace`` em endereço."""

    def __init__(self, settings: ClientSettings) -> None:
        self.settings = settings
        self._registered = False

    @property
    def enabled(self) -> bool:
        return bool(self.settings.rendezvous_host)

    def _send_request(self, payload: Dict[str, object]) -> Dict[str, object]:
        if not self.enabled:
            raise RendezvousError("rendezvous não configurado")
        endpoint = (self.settings.rendezvous_host, self.settings.rendezvous_port)
        try:
            with closing(socket.create_connection(endpoint, timeout=self.settings.rendezvous_timeout)) as sock:
                send_json(sock, payload)
                return recv_json(sock)
        except OSError as exc:
            raise RendezvousError(f"Erro de rede com rendezvous: {exc}") from exc
        except ValueError as exc:
            raise RendezvousError(f"Resposta inválida do rendezvous: {exc}") from exc

    def _expect_ok(self, payload: Dict[str, object]) -> Dict[str, object]:
        data = self._send_request(payload)
        if data.get("status") != "OK":
            raise RendezvousError(f"{payload['type']} falhou: {data}")
        return data

    def _announcement(self, kind: str, port: int) -> Dict[str, object]:
        return {"type": kind, "namespace": self.settings.namespace, "name": self.settings.name, "port": port}

    def register(self, port: int) -> Dict[str, object]:
        payload = self._announcement("REGISTER", port)
        payload["ttl"] = self.settings.ttl_seconds
        data = self._expect_ok(payload)
        self._registered = True
        logger.info("Registrado no rendezvous como %s (porta %d)", self.settings.peer_id, port)
        return data

    def unregister(self, port: int) -> None:
        if not self._registered:
            return
        self._expect_ok(self._announcement("UNREGISTER", port))
        self._registered = False
        logger.info("Peer removido do rendezvous")

    def is_registered(self) -> bool:
        return self._registered

    def discover_peers(self, namespace: Optional[str] = None) -> Iterator[PeerInfo]:
        """Consulta DISCOVER; entradas malformadas são ignoradas com um aviso."""

        payload: Dict[str, object] = {"type": "DISCOVER"}
        if namespace:
            payload["namespace"] = namespace
        entries = self._expect_ok(payload).get("peers", [])
        if not isinstance(entries, list):
            logger.warning("Lista de peers inválida recebida: %s", entries)
            return
        for entry in entries:
            try:
                yield PeerInfo(
                    peer_id=f"{entry['name']}@{entry['namespace']}",
                    address=entry["ip"],
                    port=int(entry["port"]),
                    namespace=entry["namespace"],
                )
            except (KeyError, TypeError, ValueError):
                logger.warning("Peer inválido recebido do rendezvous: %s", entry)

    def resolve(self, peer_id: str) -> Optional[PeerInfo]:
        """Procura ``peer_id`` no namespace indicado após o ``@``."""

        namespace = peer_id.rpartition("@")[2] if "@" in peer_id else None
        return next((peer for peer in self.discover_peers(namespace) if peer.peer_id == peer_id), None)

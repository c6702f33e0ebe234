"""DirectForwarder: forwards ports between peers over plain TCP.

Cada forwarder escuta um servidor de controle. Um peer que conecta envia
``HELLO`` e recebe a lista de portas expostas; depois, para cada cliente local,
abre uma conexão nova com ``OPEN`` e passa a copiar bytes (TCP) ou frames de
datagramas (UDP).
"""
from __future__ import annotations

import hashlib
import logging
import socket
import threading
from typing import Dict, List, Optional, Set, Tuple

from .config import ClientSettings, ConfigValidationError, parse_endpoint, validate_port
from .forwarder import EventHooks, Forwarder, ForwarderError
from .registry import PROTOCOLS
from .relay import (
    ACCEPT_TIMEOUT,
    TcpListener,
    UdpListener,
    bridge,
    bridge_datagrams,
    close_quietly,
    recv_json,
    send_json,
)
from .rendezvous_connection import RendezvousClient, RendezvousError
from .state import Cancel, PeerInfo


logger = logging.getLogger(__name__)

LOOPBACK_PREFIX = "127.89"
TARGET_HOST = "127.0.0.1"


def loopback_address(peer_id: str) -> str:
    """Endereço de loopback estável por peer (``127.89.x.y``)."""

    digest = hashlib.sha256(peer_id.encode("utf-8")).digest()
    return f"{LOOPBACK_PREFIX}.{digest[0]}.{digest[1] % 254 + 1}"


class DirectForwarder(Forwarder):
    """Forwarder que fala diretamente com o servidor de controle de cada peer."""

    def __init__(
        self,
        settings: ClientSettings,
        hooks: Optional[EventHooks] = None,
        rendezvous: Optional[RendezvousClient] = None,
    ) -> None:
        self.settings = settings
        self.hooks = hooks or EventHooks()
        self.rendezvous = rendezvous or RendezvousClient(settings)
        self._exposed: Dict[str, Set[int]] = {proto: set() for proto in PROTOCOLS}
        self._lock = threading.Lock()
        self._server_socket: Optional[socket.socket] = None
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._listeners: List[object] = []
        self._tunnels: Set[socket.socket] = set()
        # túneis servidos por porta exposta; fechados quando a porta é cancelada
        self._served: Dict[Tuple[str, int], Set[socket.socket]] = {}
        self._registered_port = settings.listen_port

    @property
    def id(self) -> str:
        return self.settings.peer_id

    @property
    def address(self) -> Tuple[str, int]:
        """Endereço efetivo do servidor de controle (porta 0 é resolvida aqui)."""

        if self._server_socket is None:
            return self.settings.listen_host, self.settings.listen_port
        return self._server_socket.getsockname()[:2]

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return

        server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            server.bind((self.settings.listen_host, self.settings.listen_port))
            server.listen(self.settings.extra.get("inbound_backlog", 64))
        except OSError as exc:
            server.close()
            raise ForwarderError(
                f"não foi possível escutar em {self.settings.listen_host}:{self.settings.listen_port}: {exc}"
            ) from exc
        server.settimeout(ACCEPT_TIMEOUT)
        self._server_socket = server

        self._stop_event.clear()
        self._thread = threading.Thread(target=self._accept_loop, args=(server,), name="control-server", daemon=True)
        self._thread.start()
        self.hooks.on_info(f"Servidor de controle escutando em {self.address[0]}:{self.address[1]}")

        self._registered_port = self.address[1]
        if self.rendezvous.enabled:
            try:
                self.rendezvous.register(port=self._registered_port)
            except RendezvousError as exc:
                self.hooks.on_error(exc)

    def close(self) -> None:
        """Cancelamento global: para servidor, listeners, túneis e rendezvous."""

        self._stop_event.set()
        if self._server_socket is not None:
            try:
                self._server_socket.close()
            except OSError:
                pass
            self._server_socket = None
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=2)
        self._thread = None

        with self._lock:
            listeners = list(self._listeners)
            tunnels = list(self._tunnels)
            self._listeners.clear()
            self._tunnels.clear()
            self._served.clear()
        for listener in listeners:
            listener.stop()
        for tunnel in tunnels:
            close_quietly(tunnel)

        if self.rendezvous.is_registered():
            try:
                self.rendezvous.unregister(port=self._registered_port)
            except RendezvousError as exc:
                self.hooks.on_error(exc)

    # -- operações do Forwarder -------------------------------------------

    def open_port(self, proto: str, port: int) -> Cancel:
        proto = proto.lower()
        if proto not in PROTOCOLS:
            raise ForwarderError(f"protocolo não suportado: {proto!r}")
        with self._lock:
            self._exposed[proto].add(port)
        self.hooks.on_info(f"Porta {proto}:{port} exposta aos peers")

        def cancel() -> None:
            with self._lock:
                self._exposed[proto].discard(port)
                served = self._served.pop((proto, port), set())
            for conn in served:
                close_quietly(conn)
            self.hooks.on_info(f"Porta {proto}:{port} não está mais exposta")

        return cancel

    def exposed_ports(self) -> Dict[str, List[int]]:
        with self._lock:
            return {proto: sorted(ports) for proto, ports in self._exposed.items()}

    def connect(self, peer_id: str) -> Tuple[str, Cancel]:
        peer = self.resolve(peer_id)
        ports = self._hello(peer)
        listen_ip = loopback_address(peer_id)

        listeners: List[object] = []
        for port in ports.get("tcp", []):
            listener = TcpListener(listen_ip, port, lambda conn, p=port: self._relay_tcp(peer, p, conn))
            self._start_listener(listener, listeners, peer_id)
        for port in ports.get("udp", []):
            listener = UdpListener(listen_ip, port, lambda p=port: self._open_tunnel(peer, "udp", p))
            self._start_listener(listener, listeners, peer_id)

        with self._lock:
            self._listeners.extend(listeners)

        def cancel() -> None:
            with self._lock:
                for listener in listeners:
                    if listener in self._listeners:
                        self._listeners.remove(listener)
            for listener in listeners:
                listener.stop()
            self.hooks.on_info(f"Desconectado de {peer_id}")

        return listen_ip, cancel

    def resolve(self, peer_id: str) -> PeerInfo:
        """Resolve um id: mapa estático ``peers`` primeiro, depois rendezvous."""

        endpoint = self.settings.peers.get(peer_id)
        if endpoint is not None:
            try:
                host, port = parse_endpoint(endpoint)
            except ConfigValidationError as exc:
                raise ForwarderError(str(exc)) from exc
            return PeerInfo(peer_id=peer_id, address=host, port=port, namespace=peer_id.rpartition("@")[2])

        if self.rendezvous.enabled:
            try:
                peer = self.rendezvous.resolve(peer_id)
            except RendezvousError as exc:
                raise ForwarderError(f"não foi possível resolver {peer_id}: {exc}") from exc
            if peer is not None:
                return peer
        raise ForwarderError(f"peer desconhecido: {peer_id}")

    # -- lado que conecta ---------------------------------------------------

    def _dial(self, peer: PeerInfo, request: Dict[str, object]) -> Tuple[socket.socket, Dict[str, object]]:
        try:
            sock = socket.create_connection((peer.address, peer.port), timeout=self.settings.rendezvous_timeout)
        except OSError as exc:
            raise ForwarderError(f"falha ao conectar em {peer.peer_id} ({peer.address}:{peer.port}): {exc}") from exc
        try:
            send_json(sock, request)
            response = recv_json(sock)
        except (OSError, ValueError) as exc:
            sock.close()
            raise ForwarderError(f"handshake com {peer.peer_id} falhou: {exc}") from exc
        return sock, response

    def _hello(self, peer: PeerInfo) -> Dict[str, List[int]]:
        sock, response = self._dial(peer, {"type": "HELLO", "peer_id": self.id, "version": "1.0"})
        sock.close()
        if response.get("type") != "HELLO_OK":
            raise ForwarderError(f"resposta inesperada de {peer.peer_id}: {response}")
        if response.get("peer_id") != peer.peer_id:
            raise ForwarderError(f"{peer.address}:{peer.port} se identificou como {response.get('peer_id')!r}")
        ports = response.get("ports") or {}
        try:
            if not isinstance(ports, dict):
                raise ConfigValidationError(f"esperado objeto, recebido {type(ports).__name__}")
            result: Dict[str, List[int]] = {}
            for proto in PROTOCOLS:
                entries = ports.get(proto) or []
                if not isinstance(entries, list):
                    raise ConfigValidationError(f"{proto}: esperado lista, recebido {entries!r}")
                result[proto] = [validate_port(entry) for entry in entries]
        except ConfigValidationError as exc:
            raise ForwarderError(f"lista de portas inválida de {peer.peer_id}: {exc}") from exc
        return result

    def _open_tunnel(self, peer: PeerInfo, proto: str, port: int) -> socket.socket:
        sock, response = self._dial(peer, {"type": "OPEN", "proto": proto, "port": port})
        if response.get("type") != "OPEN_OK":
            sock.close()
            raise ForwarderError(f"{peer.peer_id} recusou {proto}:{port}: {response.get('reason')}")
        sock.settimeout(None)
        with self._lock:
            self._tunnels.add(sock)
        return sock

    def _relay_tcp(self, peer: PeerInfo, port: int, conn: socket.socket) -> None:
        try:
            tunnel = self._open_tunnel(peer, "tcp", port)
        except ForwarderError as exc:
            self.hooks.on_error(exc)
            close_quietly(conn)
            return
        try:
            bridge(conn, tunnel)
        finally:
            with self._lock:
                self._tunnels.discard(tunnel)

    def _start_listener(self, listener, started: List[object], peer_id: str) -> None:
        try:
            listener.start()
        except OSError as exc:
            self.hooks.on_error(f"{peer_id}: não foi possível escutar {listener.kind}:{listener.port}: {exc}")
            return
        started.append(listener)

    # -- lado que expõe -----------------------------------------------------

    def _accept_loop(self, server: socket.socket) -> None:
        while not self._stop_event.is_set():
            try:
                conn, addr = server.accept()
            except socket.timeout:
                continue
            except OSError:
                break
            threading.Thread(
                target=self._handle_control,
                args=(conn, addr),
                name=f"control-{addr[0]}:{addr[1]}",
                daemon=True,
            ).start()

    def _handle_control(self, conn: socket.socket, addr: Tuple[str, int]) -> None:
        origin = f"{addr[0]}:{addr[1]}"
        try:
            conn.settimeout(self.settings.extra.get("peer_handshake_timeout", 5.0))
            request = recv_json(conn)
        except (OSError, ValueError) as exc:
            logger.warning("[%s] linha de controle inválida: %s", origin, exc)
            close_quietly(conn)
            return

        kind = request.get("type")
        if kind == "HELLO":
            self._answer_hello(conn, request, origin)
        elif kind == "OPEN":
            self._answer_open(conn, request, origin)
        else:
            logger.warning("[%s] comando de controle desconhecido: %s", origin, request)
            close_quietly(conn)

    def _answer_hello(self, conn: socket.socket, request: Dict[str, object], origin: str) -> None:
        self.hooks.on_info(f"HELLO de {request.get('peer_id')} ({origin})")
        try:
            send_json(conn, {"type": "HELLO_OK", "peer_id": self.id, "ports": self.exposed_ports()})
        except OSError:
            logger.debug("[%s] Falha ao enviar HELLO_OK", origin)
        finally:
            close_quietly(conn)

    def _answer_open(self, conn: socket.socket, request: Dict[str, object], origin: str) -> None:
        proto = request.get("proto")
        port = request.get("port")
        allowed = False
        if isinstance(proto, str) and isinstance(port, int):
            with self._lock:
                allowed = port in self._exposed.get(proto, ())
        if not allowed:
            self._refuse(conn, f"{proto}:{port} não está exposta")
            return

        try:
            if proto == "tcp":
                target = socket.create_connection((TARGET_HOST, port), timeout=5)
            else:
                target = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
                target.connect((TARGET_HOST, port))
        except OSError as exc:
            self.hooks.on_error(f"[{origin}] destino {proto}:{port} inacessível: {exc}")
            self._refuse(conn, str(exc))
            return

        try:
            send_json(conn, {"type": "OPEN_OK"})
        except OSError:
            close_quietly(conn)
            target.close()
            return

        conn.settimeout(None)
        key = (proto, port)
        with self._lock:
            still_exposed = port in self._exposed.get(proto, ())
            if still_exposed:
                self._tunnels.add(conn)
                self._served.setdefault(key, set()).add(conn)
        if not still_exposed:
            close_quietly(conn)
            target.close()
            return
        try:
            if proto == "tcp":
                bridge(conn, target)
            else:
                bridge_datagrams(conn, target)
        finally:
            with self._lock:
                self._tunnels.discard(conn)
                served = self._served.get(key)
                if served is not None:
                    served.discard(conn)
                    if not served:
                        del self._served[key]

    @staticmethod
    def _refuse(conn: socket.socket, reason: str) -> None:
        try:
            send_json(conn, {"type": "OPEN_ERR", "reason": reason})
        except OSError:
            pass
        close_quietly(conn)


def create_forwarder(
    settings: ClientSettings, hooks: Optional[EventHooks] = None
) -> Tuple[DirectForwarder, Cancel]:
    """Inicialização do processo: devolve o forwarder e o cancelamento global."""

    forwarder = DirectForwarder(settings, hooks)
    forwarder.start()
    return forwarder, forwarder.close

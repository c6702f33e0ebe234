"""Socket plumbing for DirectForwarder: control lines, frames and relays."""
from __future__ import annotations

import json
import logging
import socket
import struct
import threading
from typing import Callable, Dict, Optional, Set, Tuple

from .forwarder import ForwarderError


logger = logging.getLogger(__name__)

MAX_LINE_BYTES = 32 * 1024
BUFSIZE = 64 * 1024
ACCEPT_TIMEOUT = 1.0
_FRAME_HEADER = struct.Struct("!H")


def send_json(sock: socket.socket, payload: Dict[str, object]) -> None:
    sock.sendall(json.dumps(payload, separators=(",", ":")).encode("utf-8") + b"\n")


def recv_json(sock: socket.socket) -> Dict[str, object]:
    """Lê uma linha JSON de controle.

    Lê byte a byte para não consumir dados do relay que vêm logo após a linha.
    """

    buf = bytearray()
    while True:
        chunk = sock.recv(1)
        if not chunk:
            raise ConnectionError("conexão encerrada antes da linha de controle")
        if chunk == b"\n":
            break
        buf += chunk
        if len(buf) > MAX_LINE_BYTES:
            raise ValueError("linha de controle maior que o limite permitido")
    payload = json.loads(buf.decode("utf-8", errors="replace"))
    if not isinstance(payload, dict):
        raise ValueError(f"linha de controle inválida: {payload!r}")
    return payload


def send_frame(sock: socket.socket, data: bytes) -> None:
    """Envia um datagrama UDP pelo túnel TCP (prefixo de 2 bytes big-endian)."""

    sock.sendall(_FRAME_HEADER.pack(len(data)) + data)


def _recv_exact(sock: socket.socket, size: int) -> Optional[bytes]:
    buf = bytearray()
    while len(buf) < size:
        chunk = sock.recv(size - len(buf))
        if not chunk:
            return None
        buf += chunk
    return bytes(buf)


def recv_frame(sock: socket.socket) -> Optional[bytes]:
    """Lê um datagrama do túnel; ``None`` quando o túnel fechou."""

    header = _recv_exact(sock, _FRAME_HEADER.size)
    if header is None:
        return None
    (size,) = _FRAME_HEADER.unpack(header)
    if size == 0:
        return b""
    return _recv_exact(sock, size)


def close_quietly(sock: Optional[socket.socket]) -> None:
    if sock is None:
        return
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass
    try:
        sock.close()
    except OSError:
        pass


def pipe(src: socket.socket, dst: socket.socket) -> None:
    try:
        while True:
            chunk = src.recv(BUFSIZE)
            if not chunk:
                break
            dst.sendall(chunk)
    except OSError as exc:
        logger.debug("relay interrompido: %s", exc)
    finally:
        try:
            dst.shutdown(socket.SHUT_WR)
        except OSError:
            pass


def bridge(left: socket.socket, right: socket.socket) -> None:
    """Copia bytes nos dois sentidos até ambos os lados fecharem."""

    left.settimeout(None)
    right.settimeout(None)
    forward = threading.Thread(target=pipe, args=(left, right), daemon=True)
    forward.start()
    try:
        pipe(right, left)
        forward.join()
    finally:
        close_quietly(left)
        close_quietly(right)


def bridge_datagrams(tunnel: socket.socket, udp: socket.socket) -> None:
    """Liga um túnel de frames a um socket UDP já conectado ao destino."""

    stop = threading.Event()
    udp.settimeout(ACCEPT_TIMEOUT)

    def _udp_to_tunnel() -> None:
        while not stop.is_set():
            try:
                data = udp.recv(BUFSIZE)
            except socket.timeout:
                continue
            except OSError:
                break
            try:
                send_frame(tunnel, data)
            except OSError:
                break
        stop.set()

    reader = threading.Thread(target=_udp_to_tunnel, daemon=True)
    reader.start()
    try:
        while not stop.is_set():
            data = recv_frame(tunnel)
            if data is None:
                break
            udp.send(data)
    except OSError as exc:
        logger.debug("túnel UDP interrompido: %s", exc)
    finally:
        stop.set()
        close_quietly(tunnel)
        udp.close()
        reader.join(timeout=2)


class _Listener:
    """Base comum: socket ligado em ``host:port`` e thread de serviço."""

    kind = "tcp"

    def __init__(self, host: str, port: int) -> None:
        self.host = host
        self.port = port
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._socket: Optional[socket.socket] = None
        self._active: Set[socket.socket] = set()
        self._lock = threading.Lock()

    def _track(self, sock: socket.socket) -> bool:
        with self._lock:
            if self._stop_event.is_set():
                return False
            self._active.add(sock)
            return True

    def _untrack(self, sock: socket.socket) -> None:
        with self._lock:
            self._active.discard(sock)

    def _bind(self) -> socket.socket:
        raise NotImplementedError

    def _serve(self, server: socket.socket) -> None:
        raise NotImplementedError

    def start(self) -> None:
        server = self._bind()
        server.settimeout(ACCEPT_TIMEOUT)
        self._socket = server
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._serve,
            args=(server,),
            name=f"{self.kind}-listener-{self.host}:{self.port}",
            daemon=True,
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        with self._lock:
            active = list(self._active)
            self._active.clear()
        for sock in active:
            close_quietly(sock)
        if self._socket is not None:
            try:
                self._socket.close()
            except OSError:
                pass
            self._socket = None
        if self._thread and self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout=2)
        self._thread = None


class TcpListener(_Listener):
    """Aceita conexões locais e entrega cada uma a ``handler`` em uma thread."""

    kind = "tcp"

    def __init__(self, host: str, port: int, handler: Callable[[socket.socket], None]) -> None:
        super().__init__(host, port)
        self.handler = handler

    def _bind(self) -> socket.socket:
        server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            server.bind((self.host, self.port))
            server.listen(64)
        except OSError:
            server.close()
            raise
        self.port = server.getsockname()[1]
        return server

    def _serve(self, server: socket.socket) -> None:
        while not self._stop_event.is_set():
            try:
                conn, addr = server.accept()
            except socket.timeout:
                continue
            except OSError:
                break
            if not self._track(conn):
                close_quietly(conn)
                break
            threading.Thread(
                target=self._handle,
                args=(conn,),
                name=f"tcp-client-{addr[0]}:{addr[1]}",
                daemon=True,
            ).start()

    def _handle(self, conn: socket.socket) -> None:
        try:
            self.handler(conn)
        except Exception:
            logger.exception("Erro no relay de %s:%d", self.host, self.port)
            close_quietly(conn)
        finally:
            self._untrack(conn)


class UdpListener(_Listener):
    """Recebe datagramas locais e abre um túnel por endereço de origem.

    ``open_tunnel`` devolve um socket TCP já autorizado (após ``OPEN_OK``).
    """

    kind = "udp"

    def __init__(self, host: str, port: int, open_tunnel: Callable[[], socket.socket]) -> None:
        super().__init__(host, port)
        self.open_tunnel = open_tunnel
        self._tunnels: Dict[Tuple[str, int], socket.socket] = {}

    def _bind(self) -> socket.socket:
        server = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            server.bind((self.host, self.port))
        except OSError:
            server.close()
            raise
        self.port = server.getsockname()[1]
        return server

    def _serve(self, server: socket.socket) -> None:
        while not self._stop_event.is_set():
            try:
                data, addr = server.recvfrom(BUFSIZE)
            except socket.timeout:
                continue
            except OSError:
                break
            tunnel = self._tunnels.get(addr)
            if tunnel is None:
                try:
                    tunnel = self.open_tunnel()
                except (ForwarderError, OSError, ValueError) as exc:
                    logger.warning("Falha ao abrir túnel UDP para %s:%d: %s", self.host, self.port, exc)
                    continue
                if not self._track(tunnel):
                    close_quietly(tunnel)
                    break
                self._tunnels[addr] = tunnel
                threading.Thread(
                    target=self._reply_loop,
                    args=(server, tunnel, addr),
                    name=f"udp-tunnel-{addr[0]}:{addr[1]}",
                    daemon=True,
                ).start()
            try:
                send_frame(tunnel, data)
            except OSError as exc:
                logger.debug("Túnel UDP de %s fechado: %s", addr, exc)
                self._drop(addr, tunnel)

    def _reply_loop(self, server: socket.socket, tunnel: socket.socket, addr: Tuple[str, int]) -> None:
        try:
            while True:
                data = recv_frame(tunnel)
                if data is None:
                    break
                server.sendto(data, addr)
        except OSError as exc:
            logger.debug("Túnel UDP de %s encerrado: %s", addr, exc)
        finally:
            self._drop(addr, tunnel)

    def _drop(self, addr: Tuple[str, int], tunnel: socket.socket) -> None:
        if self._tunnels.get(addr) is tunnel:
            self._tunnels.pop(addr, None)
        self._untrack(tunnel)
        close_quietly(tunnel)

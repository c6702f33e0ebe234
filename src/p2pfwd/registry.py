"""In-memory registry of open port bindings and peer connections."""
from __future__ import annotations

from typing import Dict, Generic, Hashable, Iterator, List, Optional, Tuple, TypeVar

from .state import Cancel, PeerLink


K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

PROTOCOLS = ("tcp", "udp")


class CancelTable(Generic[K, V]):
    """Mapeamento chave -> capacidade de cancelamento.

    Não usa lock: a tabela pertence à ``Session`` e só é alterada pela thread
    que executa o loop da sessão.
    """

    def __init__(self) -> None:
        self._entries: Dict[K, V] = {}

    def put(self, key: K, value: V) -> None:
        # Sobrescreve sem invocar o valor anterior.
        self._entries[key] = value

    def get(self, key: K) -> Optional[V]:
        return self._entries.get(key)

    def remove(self, key: K) -> None:
        self._entries.pop(key, None)

    def pop(self, key: K) -> Optional[V]:
        """Remove e devolve a entrada em um único passo."""

        return self._entries.pop(key, None)

    def items(self) -> List[Tuple[K, V]]:
        return list(self._entries.items())

    def keys(self) -> List[K]:
        return list(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[K]:
        return iter(list(self._entries))


class ResourceRegistry:
    """Fonte única do que está aberto na sessão: portas TCP/UDP e conexões."""

    def __init__(self) -> None:
        self.tcp_ports: CancelTable[int, Cancel] = CancelTable()
        self.udp_ports: CancelTable[int, Cancel] = CancelTable()
        self.connections: CancelTable[str, PeerLink] = CancelTable()

    def ports(self, proto: str) -> CancelTable[int, Cancel]:
        if proto == "tcp":
            return self.tcp_ports
        if proto == "udp":
            return self.udp_ports
        raise ValueError(f"protocolo desconhecido: {proto!r}")

    def drain(self) -> Iterator[Tuple[str, object, Cancel]]:
        """Esvazia o registro na ordem conexões, TCP, UDP.

        Cada entrada é removida antes de ser entregue, então uma capacidade
        nunca é devolvida duas vezes.
        """

        for peer_id in self.connections:
            link = self.connections.pop(peer_id)
            if link is not None:
                yield "connection", peer_id, link.cancel
        for proto in PROTOCOLS:
            table = self.ports(proto)
            for port in table:
                cancel = table.pop(port)
                if cancel is not None:
                    yield proto, port, cancel

    def snapshot(self) -> Dict[str, list]:
        return {
            "tcp": sorted(self.tcp_ports.keys()),
            "udp": sorted(self.udp_ports.keys()),
            "connections": sorted(self.connections.keys()),
        }

    def __len__(self) -> int:
        return len(self.tcp_ports) + len(self.udp_ports) + len(self.connections)

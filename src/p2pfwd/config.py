"""Configuration helpers for the p2pfwd client.

Responsabilidades:
- Carregar ``config.json`` e aplicar defaults seguros.
- Permitir overrides por flags de linha de comando (portas, peers, log).
- Validar limites (nome, namespace, portas, TTL).
- Expor ``peer_id`` no formato ``name@namespace``.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional


MAX_NAME_LENGTH = 64
MAX_NAMESPACE_LENGTH = 64
MIN_PORT = 0
MAX_PORT = 65535
MIN_TTL = 1
MAX_TTL = 86400  # 24 horas em segundos


class ConfigValidationError(ValueError):
    """Erro de validação de configuração."""
    pass


def validate_name(name: str, label: str = "name", limit: int = MAX_NAME_LENGTH) -> str:
    if not isinstance(name, str):
        raise ConfigValidationError(f"{label} deve ser string, recebido: {type(name).__name__}")
    if len(name) == 0:
        raise ConfigValidationError(f"{label} não pode ser vazio")
    if len(name) > limit:
        raise ConfigValidationError(f"{label} excede {limit} caracteres: {len(name)}")
    if "@" in name or any(char.isspace() for char in name):
        raise ConfigValidationError(f"{label} não pode conter '@' nem espaços: {name!r}")
    return name


def validate_port(port: int) -> int:
    """Valida uma porta (inteiro sem sinal de 16 bits)."""
    if not isinstance(port, int) or isinstance(port, bool):
        raise ConfigValidationError(f"port deve ser inteiro, recebido: {type(port).__name__}")
    if port < MIN_PORT or port > MAX_PORT:
        raise ConfigValidationError(f"port deve estar entre {MIN_PORT} e {MAX_PORT}, recebido: {port}")
    return port


def parse_port(text: str) -> int:
    """Converte texto decimal em porta; não aceita sinal, espaços ou ``_``."""

    if not isinstance(text, str) or not text.isascii() or not text.isdigit():
        raise ConfigValidationError(f"porta inválida: {text!r}")
    return validate_port(int(text))


def validate_ttl(ttl: int) -> int:
    if not isinstance(ttl, int):
        raise ConfigValidationError(f"ttl deve ser inteiro, recebido: {type(ttl).__name__}")
    if ttl < MIN_TTL or ttl > MAX_TTL:
        raise ConfigValidationError(f"ttl deve estar entre {MIN_TTL} e {MAX_TTL} segundos, recebido: {ttl}")
    return ttl


def parse_endpoint(text: str) -> tuple[str, int]:
    """Divide ``host:port`` (usado no mapa estático ``peers``)."""

    host, sep, port = str(text).rpartition(":")
    if not sep or not host:
        raise ConfigValidationError(f"endpoint inválido (esperado host:porta): {text!r}")
    return host, parse_port(port)


@dataclass(slots=True)
class ClientSettings:
    """Conjunto de parâmetros do cliente.

    ``connect``, ``tcp_ports`` e ``udp_ports`` são os recursos abertos durante
    a inicialização da sessão; ``peers`` mapeia ids para ``host:porta`` e é
    consultado antes do rendezvous ao resolver um peer.
    """

    name: str = "alice"
    namespace: str = "default"
    listen_host: str = "0.0.0.0"
    listen_port: int = 6000
    rendezvous_host: Optional[str] = None  # None desativa REGISTER/DISCOVER
    rendezvous_port: int = 8080
    rendezvous_timeout: float = 10.0  # segundos
    ttl_seconds: int = 7200
    connect: List[str] = field(default_factory=list)
    tcp_ports: List[int] = field(default_factory=list)
    udp_ports: List[int] = field(default_factory=list)
    peers: Dict[str, str] = field(default_factory=dict)
    log_level: str = "INFO"
    config_file: Optional[Path] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def peer_id(self) -> str:
        return f"{self.name}@{self.namespace}"

    def validate(self) -> None:
        """Valida todos os campos.

        Raises:
            ConfigValidationError: Se algum campo estiver fora dos limites.
        """
        validate_name(self.name)
        validate_name(self.namespace, "namespace", MAX_NAMESPACE_LENGTH)
        validate_port(self.listen_port)
        validate_port(self.rendezvous_port)
        validate_ttl(self.ttl_seconds)
        for port in [*self.tcp_ports, *self.udp_ports]:
            validate_port(port)
        for peer_id in self.connect:
            if not isinstance(peer_id, str) or not peer_id:
                raise ConfigValidationError(f"id de peer inválido em connect: {peer_id!r}")
        for endpoint in self.peers.values():
            parse_endpoint(endpoint)

    @classmethod
    def from_file(cls, path: Optional[Path]) -> "ClientSettings":
        """Carrega configurações de um arquivo JSON, se existir."""

        if path is None or not path.exists():
            return cls(config_file=path)

        with path.open("r", encoding="utf-8") as fp:
            raw_data = json.load(fp)
        if not isinstance(raw_data, dict):
            raise ConfigValidationError(f"{path}: esperado um objeto JSON")

        known_fields = {f.name for f in fields(cls)} - {"config_file", "extra"}
        init_kwargs: Dict[str, Any] = {
            key: value for key, value in raw_data.items() if key in known_fields
        }
        extra = {key: value for key, value in raw_data.items() if key not in known_fields}
        settings = cls(**init_kwargs, config_file=path)
        settings.extra.update(extra)
        settings.validate()
        return settings

    def to_dict(self) -> Dict[str, Any]:
        """Exporta a configuração atual (útil para logs e debug)."""

        return {
            "name": self.name,
            "namespace": self.namespace,
            "peer_id": self.peer_id,
            "listen_host": self.listen_host,
            "listen_port": self.listen_port,
            "rendezvous_host": self.rendezvous_host,
            "rendezvous_port": self.rendezvous_port,
            "rendezvous_timeout": self.rendezvous_timeout,
            "ttl_seconds": self.ttl_seconds,
            "connect": list(self.connect),
            "tcp_ports": list(self.tcp_ports),
            "udp_ports": list(self.udp_ports),
            "peers": dict(self.peers),
            "log_level": self.log_level,
            "extra": self.extra,
        }

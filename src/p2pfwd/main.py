"""Entry-point helper for running the p2pfwd client."""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from .config import ClientSettings, ConfigValidationError, parse_port
from .direct import create_forwarder
from .forwarder import EventHooks, ForwarderError
from .session import Session


logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s.%(msecs)03d %(levelname)s %(message)s"
DATE_FORMAT = "%Y/%m/%d %H:%M:%S"


def find_default_config() -> Path | None:
    """Procura config.json no diretório atual."""
    config_in_cwd = Path.cwd() / "config.json"
    if config_in_cwd.exists():
        return config_in_cwd
    return None


def _port_arg(value: str) -> int:
    try:
        return parse_port(value)
    except ConfigValidationError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="p2pfwd - encaminhamento de portas entre peers")
    parser.add_argument("--config", type=Path, help="Caminho para arquivo de configuração", default=None)
    parser.add_argument("--log-level", help="Override de nível de log", default=None)
    parser.add_argument("--name", help="Override do nome do peer", default=None)
    parser.add_argument("--namespace", help="Override do namespace do peer", default=None)
    parser.add_argument("--listen-port", type=_port_arg, help="Porta do servidor de controle", default=None)
    parser.add_argument(
        "--connect", action="append", default=[], metavar="ID",
        help="Id ao qual conectar (pode ser repetido)",
    )
    parser.add_argument(
        "--tcp", action="append", type=_port_arg, default=[], metavar="PORT",
        help="Porta tcp a abrir (pode ser repetido)",
    )
    parser.add_argument(
        "--udp", action="append", type=_port_arg, default=[], metavar="PORT",
        help="Porta udp a abrir (pode ser repetido)",
    )
    return parser


class _BelowLevel(logging.Filter):
    def __init__(self, level: int) -> None:
        super().__init__()
        self.level = level

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno < self.level


def configure_logging(level: str = "INFO") -> None:
    """Info vai para stdout e erros para stderr, ambos com timestamp."""

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.addFilter(_BelowLevel(logging.ERROR))
    stdout_handler.setFormatter(formatter)

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(logging.ERROR)
    stderr_handler.setFormatter(formatter)

    logging.basicConfig(level=level.upper(), handlers=[stdout_handler, stderr_handler], force=True)


def load_settings(args: argparse.Namespace) -> ClientSettings:
    """Combina arquivo de configuração e flags; flags de lista se somam ao arquivo."""

    config_path = args.config if args.config else find_default_config()
    settings = ClientSettings.from_file(config_path)

    if args.log_level:
        settings.log_level = args.log_level.upper()
    if args.name:
        settings.name = args.name
    if args.namespace:
        settings.namespace = args.namespace
    if args.listen_port is not None:
        settings.listen_port = args.listen_port
    settings.connect.extend(args.connect)
    settings.tcp_ports.extend(args.tcp)
    settings.udp_ports.extend(args.udp)
    settings.validate()
    return settings


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    try:
        settings = load_settings(args)
    except (ConfigValidationError, ValueError, OSError) as exc:
        print(f"Configuração inválida: {exc}", file=sys.stderr)
        return 2

    configure_logging(settings.log_level)
    if settings.config_file and settings.config_file.exists():
        logger.info("Configuração carregada de: %s", settings.config_file)

    hooks = EventHooks()
    try:
        forwarder, global_cancel = create_forwarder(settings, hooks)
    except ForwarderError as exc:
        logger.error("Falha ao iniciar o forwarder: %s", exc)
        return 1

    session = Session(forwarder, global_cancel)
    session.install_signal_handlers()
    session.initialize(settings.tcp_ports, settings.udp_ports, settings.connect)
    session.start_reader()
    session.run()
    return 0


if __name__ == "__main__":
    sys.exit(main())

from __future__ import annotations

import importlib
import logging
from typing import Iterable, List, Sequence

from ..domain import Symbol
from ..settings import Settings
from .base import ConnectorSpec, EventSink, StatusSink, StreamConnector

logger = logging.getLogger(__name__)


def load_connector_spec(name: str) -> ConnectorSpec:
    """Import ``connectors.<name>`` and return its ``connector`` spec.

    A new exchange only needs a module in this package exposing
    ``connector = ConnectorSpec(...)``.
    """

    module_name = f"{__name__.rsplit('.', 1)[0]}.{name.strip().lower()}"
    module = importlib.import_module(module_name)
    spec = getattr(module, "connector", None)
    if not isinstance(spec, ConnectorSpec):
        raise RuntimeError(f"Connector module '{module_name}' does not define a valid ConnectorSpec")
    return spec


def load_connectors(enabled: Iterable[str]) -> List[tuple[str, ConnectorSpec]]:
    """Resolve configured exchange names, keeping the configured display casing."""

    connectors: List[tuple[str, ConnectorSpec]] = []
    failures: dict[str, BaseException] = {}
    for raw_name in enabled:
        name = raw_name.strip()
        if not name:
            continue
        try:
            connectors.append((name, load_connector_spec(name)))
        except Exception as exc:
            logger.exception("Failed to load connector for %s", name)
            failures[name] = exc

    if not connectors:
        raise RuntimeError("No connectors were loaded. Check EXCHANGES configuration")
    if failures:
        logger.warning(
            "Skipped %d connector(s) due to startup errors: %s",
            len(failures),
            ", ".join(sorted(failures)),
        )
    return connectors


def build_connectors(
    cfg: Settings,
    *,
    sink: EventSink,
    status: StatusSink,
    symbols: Sequence[Symbol] | None = None,
) -> List[StreamConnector]:
    built: List[StreamConnector] = []
    for name, spec in load_connectors(cfg.exchanges):
        options = spec.options(cfg) if spec.options else {}
        built.append(
            spec.factory(
                name=name,
                symbols=list(symbols if symbols is not None else cfg.symbols),
                sink=sink,
                status=status,
                reconnect_delay=cfg.reconnect_delay,
                ping_interval=cfg.ping_interval,
                connect_timeout=cfg.ws_connect_timeout,
                **options,
            )
        )
    return built

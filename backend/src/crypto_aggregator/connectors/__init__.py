"""Exchange stream connectors."""

from .base import ConnectorSpec, ConnectorState, Session, StreamConnector
from .registry import build_connectors, load_connector_spec, load_connectors

__all__ = [
    "ConnectorSpec",
    "ConnectorState",
    "Session",
    "StreamConnector",
    "build_connectors",
    "load_connector_spec",
    "load_connectors",
]

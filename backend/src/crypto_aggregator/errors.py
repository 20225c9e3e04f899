"""Exception hierarchy shared by the pipeline components."""

from __future__ import annotations


class AggregatorError(Exception):
    """Base class for every error raised by :mod:`crypto_aggregator`."""


class QueueUnavailableError(AggregatorError):
    """The message broker could not be reached within the configured retries."""


class HandshakeError(AggregatorError):
    """A connector failed its pre-connect handshake (token, endpoint, ping interval)."""


class DecodeError(AggregatorError):
    """A frame or queue payload could not be decoded into a normalized event."""


class PoisonMessageError(DecodeError):
    """A queue message that will never decode; it must be acknowledged and dropped."""


class TransientError(AggregatorError):
    """A downstream failure worth retrying; the queue message is requeued."""

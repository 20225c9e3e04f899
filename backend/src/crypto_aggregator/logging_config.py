from __future__ import annotations

import logging

DEFAULT_FMT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def configure_logging(level: str | int = logging.INFO) -> None:
    root = logging.getLogger()
    # avoid duplicate handlers on reload
    if getattr(root, "_crypto_aggregator_logging_installed", False):
        root.setLevel(level)
        return

    root.setLevel(level)
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(DEFAULT_FMT))
    root.addHandler(handler)

    # third-party noise
    logging.getLogger("websockets").setLevel(logging.WARNING)
    logging.getLogger("aio_pika").setLevel(logging.WARNING)
    logging.getLogger("aiormq").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)

    root._crypto_aggregator_logging_installed = True  # type: ignore[attr-defined]

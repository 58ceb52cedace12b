"""Root logging setup, applied once at application startup."""

import logging
import sys

_LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def setup_logging(level: str = "INFO") -> None:
    """Attach a single stdout handler to the root logger.

    Safe to call repeatedly: an existing handler installed here is replaced,
    not duplicated.
    """
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_tb_handler", False):
            root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    handler._tb_handler = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    root.setLevel(level.upper())

    # httpx logs every request at INFO; keep chain polling out of the log
    logging.getLogger("httpx").setLevel(logging.WARNING)

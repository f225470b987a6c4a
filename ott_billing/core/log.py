from __future__ import annotations

import logging

from .settings import S

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str | None = None) -> None:
    """Install a root handler once; later calls only adjust the level."""
    resolved = getattr(logging, (level or S.log_level).upper(), logging.INFO)
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=resolved, format=LOG_FORMAT)
    root.setLevel(resolved)
    # botocore is chatty at INFO
    logging.getLogger("botocore").setLevel(max(resolved, logging.WARNING))

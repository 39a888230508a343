"""
Shared helpers.
"""
import logging
import sys

from tontine_api.core import config


_configured = False


def _configure_root() -> None:
    global _configured
    if _configured:
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s"))
    root = logging.getLogger("tontine_api")
    root.addHandler(handler)
    root.setLevel(config.LOG_LEVEL)
    root.propagate = False
    _configured = True


def get_logger(name: str) -> logging.Logger:
    """
    Get a module logger under the ``tontine_api`` namespace.

    Usage:
        log = get_logger(__name__)
        log.info("Role created")
    """
    _configure_root()
    if not name.startswith("tontine_api"):
        name = f"tontine_api.{name}"
    return logging.getLogger(name)

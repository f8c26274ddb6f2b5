"""Network topology discovery engine.

Logs into routers, switches and access points over SSH, normalises their
vendor-specific CLI output and walks discovered neighbours until the
reachable topology of a network is mapped.
"""

__version__ = "0.1.0"

import os
import sys
from typing import Any, Callable, Dict

from loguru import logger as glogger

glogger.disable(__name__)


def _loguru_skiplog_filter(record: dict) -> bool:  # type: ignore[type-arg]
    """Filter function to hide records with ``extra['skiplog']`` set."""
    return not record.get("extra", {}).get("skiplog", False)


def configure_logging(
    loguru_filter: Callable[[Dict[str, Any]], bool] = _loguru_skiplog_filter,
) -> None:
    """Configure a default ``loguru`` sink with a convenient format and filter."""
    os.environ["LOGURU_LEVEL"] = os.getenv("LOGURU_LEVEL", "INFO")
    glogger.remove()
    logger_fmt: str = (
        "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | <cyan>{module}</cyan>::<cyan>{extra[classname]}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
    )
    glogger.add(sys.stderr, level=os.getenv("LOGURU_LEVEL"), format=logger_fmt, filter=loguru_filter)  # type: ignore[arg-type]
    glogger.configure(extra={"classname": "None", "skiplog": False})
    glogger.enable(__name__)


# Import drivers to trigger registration
import topomapper.drivers  # noqa: F401, E402
from topomapper.crawler import ScanManager  # noqa: E402
from topomapper.credentials import CredentialCache, CredentialResolver  # noqa: E402
from topomapper.drivers.registry import get_driver, list_drivers, select_driver  # noqa: E402
from topomapper.events import EventBus  # noqa: E402
from topomapper.exceptions import (  # noqa: E402
    AuthenticationFailed,
    CommandTimeout,
    ConnectTimeout,
    InternalFailure,
    ParseIncomplete,
    ScanAlreadyRunning,
    TopologyError,
    TransportError,
)
from topomapper.settings import CrawlSettings  # noqa: E402
from topomapper.store import JsonFileStore, MemoryStore, RecordStore  # noqa: E402

__all__ = [
    "glogger",
    "configure_logging",
    "ScanManager",
    "CredentialCache",
    "CredentialResolver",
    "EventBus",
    "CrawlSettings",
    "RecordStore",
    "MemoryStore",
    "JsonFileStore",
    "get_driver",
    "list_drivers",
    "select_driver",
    "TopologyError",
    "ConnectTimeout",
    "TransportError",
    "CommandTimeout",
    "AuthenticationFailed",
    "ParseIncomplete",
    "ScanAlreadyRunning",
    "InternalFailure",
]

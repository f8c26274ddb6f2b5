"""Driver registry and confidence-based selection."""

from __future__ import annotations

from typing import Optional

from loguru import logger

from topomapper.drivers.base import BaseDriver

FALLBACK_DRIVER = "generic"

_DRIVER_REGISTRY: dict[str, BaseDriver] = {}


def register_driver(cls: type[BaseDriver]) -> type[BaseDriver]:
    """Decorator to register a driver class under its ``name``.

    Usage::

        @register_driver
        class ZyxelDriver(BaseDriver):
            name = "zyxel"
            ...
    """
    _DRIVER_REGISTRY[cls.name.lower()] = cls()
    return cls


def get_driver(name: str) -> BaseDriver:
    """Return the registered driver called ``name``.

    Raises:
        ValueError: If no driver has that name.
    """
    name_lower = name.lower()
    if name_lower not in _DRIVER_REGISTRY:
        available = ", ".join(sorted(_DRIVER_REGISTRY.keys()))
        raise ValueError(f"Unknown driver '{name}'. Available: {available}")
    return _DRIVER_REGISTRY[name_lower]


def list_drivers() -> list[str]:
    """Return a sorted list of registered driver names."""
    return sorted(_DRIVER_REGISTRY.keys())


def select_driver(text: str, vendor_hint: Optional[str] = None) -> BaseDriver:
    """Pick the driver most confident about ``text`` (banner and/or probe output).

    ``vendor_hint`` is the OUI vendor of the device MAC, if known. Ties go to
    the driver registered first; ``generic`` is used when nobody is confident.
    """
    best: Optional[BaseDriver] = None
    best_score = 0.0
    for driver in _DRIVER_REGISTRY.values():
        score = driver.score(text, vendor_hint)
        if score > best_score:
            best, best_score = driver, score
    if best is None:
        return get_driver(FALLBACK_DRIVER)
    logger.debug(f"Selected driver {best.name} (confidence {best_score:.2f})")
    return best

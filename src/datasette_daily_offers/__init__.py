"""Datasette plugin for crowd-sourced daily price offers with corroboration-based approval."""

from datasette_daily_offers.plugin import (
    register_routes,
    shutdown,
    skip_csrf,
    startup,
)

__all__ = [
    "register_routes",
    "shutdown",
    "skip_csrf",
    "startup",
]

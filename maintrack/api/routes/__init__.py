"""Route modules exposed by the API package."""

from . import admin, breakdowns, files, ping

__all__ = ["admin", "breakdowns", "files", "ping"]

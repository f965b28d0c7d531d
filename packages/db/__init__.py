"""Database models and utilities."""

from .models import BreakdownTable

__all__ = ["BreakdownTable"]

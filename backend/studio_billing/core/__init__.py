"""Core module for configuration and utilities."""

from studio_billing.core.config import settings
from studio_billing.core.database import Base, get_db

__all__ = [
    "settings",
    "Base",
    "get_db",
]

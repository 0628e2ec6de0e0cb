"""Core module for configuration and utilities."""

from creditflow.core.celery_app import celery_app
from creditflow.core.config import settings
from creditflow.core.database import Base, get_session

__all__ = [
    "celery_app",
    "settings",
    "Base",
    "get_session",
]

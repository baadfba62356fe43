"""Domux configuration.

This package contains:
- settings: Environment variables and configuration
- secrets: Unified secret access (Firebase Secrets Manager)
- errors: Custom exceptions and error codes
"""

from config.settings import settings
from config.errors import DomuxError
from config.secrets import get_secret, get_openai_api_key

__all__ = [
    "settings",
    "DomuxError",
    "get_secret",
    "get_openai_api_key",
]

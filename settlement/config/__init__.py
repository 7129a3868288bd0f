"""
Configuration package.

This package contains environment loading and validation.
"""

from settlement.config.config import Settings, env_bool

__all__ = [
    "Settings",
    "env_bool",
]

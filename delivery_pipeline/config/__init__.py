"""
Configuration package for the delivery pipeline.

This package provides centralized configuration management for the pipeline,
including settings for the source, registry, build, deploy, notification,
database and logging components.
"""

from .settings import (
    ConcurrencyPolicy,
    Settings,
    SourceKind,
    get_settings,
    reload_settings,
)

__all__ = [
    "ConcurrencyPolicy",
    "Settings",
    "SourceKind",
    "get_settings",
    "reload_settings",
]

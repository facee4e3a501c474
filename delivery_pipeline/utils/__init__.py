"""
Utility functions and helpers for the delivery pipeline.

This package contains utility modules for logging, AWS client management
and input validation used throughout the pipeline.
"""

from .logging import get_logger, setup_logging

__all__ = ["get_logger", "setup_logging"]

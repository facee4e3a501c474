"""
Custom exceptions for the delivery pipeline.

This module defines custom exception classes for the failures that can occur
while resolving sources, building images, deploying services and delivering
notifications.
"""

from .base import (
    AuthFailed,
    BuildFailed,
    ConcurrentDeployRejected,
    ConfigurationError,
    DeliveryPipelineError,
    DeployFailed,
    FileOperationError,
    NotFoundError,
    NotificationDeliveryFailed,
    PipelineError,
    RunCancelled,
    SourceUnavailable,
    ValidationError,
)

__all__ = [
    "AuthFailed",
    "BuildFailed",
    "ConcurrentDeployRejected",
    "ConfigurationError",
    "DeliveryPipelineError",
    "DeployFailed",
    "FileOperationError",
    "NotFoundError",
    "NotificationDeliveryFailed",
    "PipelineError",
    "RunCancelled",
    "SourceUnavailable",
    "ValidationError",
]

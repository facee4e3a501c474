"""
Base exception classes for the delivery pipeline.

This module defines the base exception hierarchy and the specific exception
classes raised by the pipeline stages. The class name of a stage failure is
recorded on the pipeline run as its error kind.
"""


class DeliveryPipelineError(Exception):
    """
    Base exception class for all pipeline-specific errors.

    This is the root exception class for all custom exceptions in the
    delivery pipeline. It provides a consistent interface for error
    handling and reporting.
    """

    def __init__(self, message: str, details: dict = None):
        """
        Initialize the exception.

        Args:
            message: Human-readable error message.
            details: Optional dictionary with additional error details.
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    @property
    def kind(self) -> str:
        """Error kind recorded on pipeline runs."""
        return type(self).__name__

    def __str__(self):
        """Return string representation of the exception."""
        if self.details:
            return f"{self.message} (Details: {self.details})"
        return self.message


class ValidationError(DeliveryPipelineError):
    """
    Exception raised for validation errors.

    Raised when input data fails validation checks, such as malformed
    webhook URLs, image tags or descriptor files.
    """
    pass


class NotFoundError(DeliveryPipelineError):
    """
    Exception raised when a requested resource is not found.
    """
    pass


class ConfigurationError(DeliveryPipelineError):
    """
    Exception raised for configuration-related errors.

    Raised when settings required by a stage are missing or inconsistent,
    for example a VCS source without a repository URL.
    """
    pass


class FileOperationError(DeliveryPipelineError):
    """
    Exception raised for file operation errors.

    Raised when workspace or artifact files cannot be created, read or
    written.
    """

    def __init__(self, message: str, file_path: str = None, operation: str = None, details: dict = None):
        """
        Initialize the file operation exception.

        Args:
            message: Human-readable error message.
            file_path: Path to the file that caused the error.
            operation: The operation that failed (read, write, delete, etc.).
            details: Optional dictionary with additional error details.
        """
        super().__init__(message, details)
        self.file_path = file_path
        self.operation = operation


class PipelineError(DeliveryPipelineError):
    """
    Exception raised for pipeline execution errors.

    Also used to wrap unexpected errors escaping a stage.
    """

    def __init__(self, message: str, stage: str = None, run_id: int = None, details: dict = None):
        """
        Initialize the pipeline exception.

        Args:
            message: Human-readable error message.
            stage: The pipeline stage that failed.
            run_id: The pipeline run ID.
            details: Optional dictionary with additional error details.
        """
        super().__init__(message, details)
        self.stage = stage
        self.run_id = run_id


class SourceUnavailable(DeliveryPipelineError):
    """
    Raised when the source repository or registry reference cannot be read.

    Transient; a new trigger retries it.
    """
    pass


class AuthFailed(DeliveryPipelineError):
    """
    Raised when the registry credential exchange or login fails.

    Transient; the surrounding scheduler retries with backoff.
    """
    pass


class BuildFailed(DeliveryPipelineError):
    """
    Raised when any build command exits non-zero or times out.

    Terminal for the run; the source or build specification needs a fix.
    """

    def __init__(self, message: str, phase: str = None, command: str = None, details: dict = None):
        """
        Initialize the build failure.

        Args:
            message: Human-readable error message.
            phase: Build specification phase that failed.
            command: The failing command.
            details: Optional dictionary with exit code and output tail.
        """
        super().__init__(message, details)
        self.phase = phase
        self.command = command


class DeployFailed(DeliveryPipelineError):
    """
    Raised when a rollout does not become healthy.

    The service is rolled back to its prior revision before this is raised;
    ``rollback_outcome`` reports how that went.
    """

    def __init__(self, message: str, rolled_back: bool = False,
                 rollback_outcome: str = None, details: dict = None):
        """
        Initialize the deploy failure.

        Args:
            message: Human-readable error message.
            rolled_back: Whether the service is back on its prior revision.
            rollback_outcome: Short description of the rollback result.
            details: Optional dictionary with additional error details.
        """
        super().__init__(message, details)
        self.rolled_back = rolled_back
        self.rollback_outcome = rollback_outcome


class ConcurrentDeployRejected(DeliveryPipelineError):
    """
    Raised when another deploy to the same service is in flight.

    The caller must retry later.
    """

    def __init__(self, message: str, target: str = None, details: dict = None):
        super().__init__(message, details)
        self.target = target


class NotificationDeliveryFailed(DeliveryPipelineError):
    """
    Raised inside the notifier when a webhook call fails.

    Always caught and logged by the notifier; never reaches the pipeline.
    """
    pass


class RunCancelled(DeliveryPipelineError):
    """
    Raised when a run is cancelled before its next irreversible step.
    """

    def __init__(self, message: str, stage: str = None, details: dict = None):
        super().__init__(message, details)
        self.stage = stage

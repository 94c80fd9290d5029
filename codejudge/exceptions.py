"""
Custom exception hierarchy for codejudge.
"""
from typing import Optional, Dict, Any, List


class CodeJudgeError(Exception):
    """Base exception for all codejudge errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - Details: {self.details}"
        return self.message


class ClientError(CodeJudgeError):
    """Base exception for client-side errors."""
    pass


class JudgeClientError(ClientError):
    """Exception raised when a client HTTP request fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.status_code = details.get("status_code") if details else None
        self.response_text = details.get("response_text") if details else None


class ServerError(CodeJudgeError):
    """Base exception for server-side errors."""
    pass


class ExecutorError(CodeJudgeError):
    """Base exception for sandbox execution errors."""
    pass


class ValidationError(CodeJudgeError):
    """Base exception for validation errors."""
    pass


class UnsupportedLanguageError(ValidationError):
    def __init__(self, language: str, supported: Optional[List[str]] = None):
        details = {"language": language}
        if supported:
            details["supported"] = supported
        super().__init__(f"Unsupported language: {language}", details)
        self.language = language


class InvalidLimitsError(ValidationError):
    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message, {"field": field} if field else {})
        self.field = field


class JobNotFoundError(ClientError):
    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}", {"job_id": job_id})
        self.job_id = job_id


class SchedulerNotInitializedError(ServerError):
    def __init__(self):
        super().__init__("Scheduler not initialized. Call initialize() first.")


class OverloadedError(ServerError):
    """Raised when a job is rejected because the admission queue is full."""

    def __init__(
        self,
        message: str = "Job rejected due to backpressure",
        queue_name: Optional[str] = None,
        current_size: Optional[int] = None,
        capacity: Optional[int] = None,
    ):
        details: Dict[str, Any] = {}
        if queue_name is not None:
            details["queue_name"] = queue_name
        if current_size is not None:
            details["current_size"] = current_size
        if capacity is not None:
            details["capacity"] = capacity
            details["utilization"] = (current_size or 0) / capacity if capacity else 1.0
        super().__init__(message, details)
        self.queue_name = queue_name
        self.current_size = current_size
        self.capacity = capacity


class PoolExhaustedError(ExecutorError):
    def __init__(self, language: str, capacity: int, waited: float):
        super().__init__(
            f"No sandbox instance available for {language} after {waited:.2f}s",
            {"language": language, "capacity": capacity, "waited": waited},
        )
        self.language = language
        self.capacity = capacity
        self.waited = waited


class InstanceError(ExecutorError):
    """Raised when the isolation layer fails to create, drive or destroy an instance."""

    def __init__(self, message: str, instance_id: Optional[str] = None):
        super().__init__(message, {"instance_id": instance_id} if instance_id else {})
        self.instance_id = instance_id


class LimitConfigurationError(InstanceError):
    def __init__(self, instance_id: str, missing: Optional[List[str]] = None, cause: Optional[str] = None):
        message = f"Failed to configure resource limits on instance {instance_id}"
        if cause:
            message = f"{message} - {cause}"
        super().__init__(message, instance_id)
        self.details["missing"] = missing or []
        self.missing = missing or []
        self.cause = cause


class StagingError(InstanceError):
    def __init__(self, instance_id: str, cause: Optional[str] = None):
        message = f"Failed to stage job files into instance {instance_id}"
        if cause:
            message = f"{message} - {cause}"
        super().__init__(message, instance_id)
        self.cause = cause

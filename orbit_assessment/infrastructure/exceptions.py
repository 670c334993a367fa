"""
Custom exception classes for the ORBIT assessment engine.

Provides structured error handling with user-friendly messages and proper
error categorization for scoring, merge and persistence failures.
"""

from __future__ import annotations

from typing import Any


class OrbitAssessmentError(Exception):
    """Base exception for all application errors."""

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        user_message: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.user_message = user_message or self._get_default_user_message()

    def _get_default_user_message(self) -> str:
        """Provide a user-friendly version of the error message."""
        return "An unexpected error occurred. Please try again."

    def __str__(self) -> str:
        return f"{self.__class__.__name__}: {self.message}"


class ValidationError(OrbitAssessmentError):
    """Raised when input validation fails."""

    def __init__(
        self, field: str, message: str, value: Any = None, details: dict[str, Any] | None = None
    ):
        self.field = field
        self.value = value
        super().__init__(
            message=f"Validation failed for field '{field}': {message}",
            details=details or {"field": field, "value": value},
            user_message=f"Invalid {field.replace('_', ' ')}: {message}",
        )


class DatabaseError(OrbitAssessmentError):
    """Raised when database operations fail."""

    def __init__(self, message: str, operation: str, details: dict[str, Any] | None = None):
        self.operation = operation
        super().__init__(
            message=f"Database error during {operation}: {message}",
            details=details or {"operation": operation},
            user_message="A database error occurred. Please try again in a moment.",
        )


class ConnectionError(DatabaseError):
    """Raised when database connection fails."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message=message, operation="connection", details=details)


class IntegrityError(DatabaseError):
    """Raised when database integrity constraints are violated."""

    def __init__(
        self,
        message: str,
        constraint: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.constraint = constraint
        super().__init__(
            message=message,
            operation="integrity_check",
            details=details or {"constraint": constraint},
        )


class DataIntegrityError(OrbitAssessmentError):
    """Raised when stored or imported data contradicts the maturity model."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            details=details,
            user_message="The assessment data does not match the ORBIT model.",
        )


class UnknownAspectError(DataIntegrityError):
    """Raised when a rating references an aspect the catalog does not know."""

    def __init__(
        self,
        aspect_id: str,
        dimension_id: str | None = None,
        sub_dimension_id: str | None = None,
        reason: str | None = None,
    ):
        self.aspect_id = aspect_id
        self.dimension_id = dimension_id
        self.sub_dimension_id = sub_dimension_id
        super().__init__(
            message=reason or f"Unknown aspect '{aspect_id}'",
            details={
                "aspect_id": aspect_id,
                "dimension_id": dimension_id,
                "sub_dimension_id": sub_dimension_id,
            },
        )


class CatalogError(OrbitAssessmentError):
    """Raised when the packaged maturity or capability model is malformed."""

    def __init__(self, message: str, source: str | None = None):
        self.source = source
        super().__init__(
            message=message,
            details={"source": source},
            user_message="The reference model could not be loaded.",
        )


class AssessmentError(OrbitAssessmentError):
    """Raised when assessment operations fail."""

    def __init__(
        self,
        message: str,
        assessment_id: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.assessment_id = assessment_id
        super().__init__(
            message=message,
            details=details or {"assessment_id": assessment_id},
            user_message="Assessment error occurred. Please select a valid assessment and try again.",
        )


class AssessmentNotFoundError(AssessmentError):
    """Raised when an assessment is not found."""

    def __init__(self, assessment_id: str):
        super().__init__(
            message=f"Assessment with ID {assessment_id} not found", assessment_id=assessment_id
        )

    def _get_default_user_message(self) -> str:
        return "The selected assessment could not be found."


class CapabilityAreaNotFoundError(OrbitAssessmentError):
    """Raised when a capability area id is not part of the reference model."""

    def __init__(self, area_id: str):
        self.area_id = area_id
        super().__init__(
            message=f"Capability area '{area_id}' not found",
            details={"area_id": area_id},
            user_message="The selected capability area does not exist.",
        )


class HistoryNotFoundError(OrbitAssessmentError):
    """Raised when a history entry is not found."""

    def __init__(self, history_id: str):
        self.history_id = history_id
        super().__init__(
            message=f"History entry with ID {history_id} not found",
            details={"history_id": history_id},
            user_message="The selected history entry could not be found.",
        )


class RatingError(OrbitAssessmentError):
    """Raised when rating operations fail."""

    def __init__(
        self,
        message: str,
        rating_level: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.rating_level = rating_level
        super().__init__(
            message=message,
            details=details or {"rating_level": rating_level},
            user_message="Rating error occurred. Please check your rating and try again.",
        )


class InvalidRatingError(RatingError):
    """Raised when an invalid rating is provided."""

    def __init__(self, rating_level: Any):
        super().__init__(
            message=f"Invalid rating level: {rating_level}. Must be between 1-5, 0 or -1 (N/A)",
            rating_level=rating_level,
        )


class ExportError(OrbitAssessmentError):
    """Raised when data export fails."""

    def __init__(
        self,
        message: str,
        export_format: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.export_format = export_format
        super().__init__(
            message=message,
            details=details or {"export_format": export_format},
            user_message="Export failed. Please try again or choose a different format.",
        )


class BundleImportError(OrbitAssessmentError):
    """Raised when an import bundle cannot be read or validated."""

    def __init__(
        self,
        message: str,
        file_path: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.file_path = file_path
        super().__init__(
            message=message,
            details=details or {"file_path": file_path},
            user_message="Import failed. Please check your file and try again.",
        )


class BusinessLogicError(OrbitAssessmentError):
    """Raised when business logic constraints are violated."""

    def __init__(
        self, message: str, rule: str | None = None, details: dict[str, Any] | None = None
    ):
        self.rule = rule
        super().__init__(
            message=message,
            details=details or {"rule": rule},
            user_message="This operation cannot be completed due to business rules.",
        )


def handle_database_error(e: Exception, operation: str = "database operation") -> DatabaseError:
    """
    Convert generic database exceptions to appropriate custom exceptions.

    Args:
        e: The original exception
        operation: Description of the operation that failed

    Returns:
        Appropriate DatabaseError subclass

    Example:
        >>> try:
        ...     session.commit()
        >>> except Exception as e:
        ...     raise handle_database_error(e, "commit transaction")
    """
    error_msg = str(e).lower()

    if "connection" in error_msg or "timeout" in error_msg:
        return ConnectionError(str(e))
    elif "unique constraint" in error_msg or "duplicate" in error_msg:
        return IntegrityError(str(e), constraint="unique")
    elif "foreign key" in error_msg or "foreign_key" in error_msg:
        return IntegrityError(str(e), constraint="foreign_key")
    elif "check constraint" in error_msg:
        return IntegrityError(str(e), constraint="check")
    else:
        return DatabaseError(str(e), operation)


def create_user_friendly_error_message(error: Exception) -> str:
    """
    Create a user-friendly error message from any exception.

    Args:
        error: The exception to convert

    Returns:
        User-friendly error message
    """
    if isinstance(error, OrbitAssessmentError):
        return error.user_message

    error_type = type(error).__name__
    messages = {
        "ValueError": "Invalid input provided. Please check your data and try again.",
        "KeyError": "Required information is missing. Please check your input.",
        "TypeError": "Incorrect data type provided. Please check your input format.",
    }
    return messages.get(
        error_type, "An unexpected error occurred. Please try again or contact support."
    )


def log_error_details(error: Exception, context: dict[str, Any] | None = None) -> dict[str, Any]:
    """
    Create structured error details for logging.

    Args:
        error: The exception to log
        context: Additional context information

    Returns:
        Dictionary with structured error details

    Example:
        >>> error = AssessmentNotFoundError("a-1")
        >>> details = log_error_details(error, {"area_id": "provider-screening"})
        >>> print(details["error_type"])  # "AssessmentNotFoundError"
    """
    details = {
        "error_type": type(error).__name__,
        "error_message": str(error),
        "context": context or {},
    }

    if isinstance(error, OrbitAssessmentError):
        details.update({"user_message": error.user_message, "error_details": error.details})

    return details

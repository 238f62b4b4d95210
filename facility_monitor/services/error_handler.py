"""
Error handling utilities for Facility Monitor.

This module provides:
1. The ApiError hierarchy raised by the data-access services
2. Tracking of error types and recent occurrences
3. User-friendly error messages for the HTTP layer
"""
from typing import Dict, Any, Optional
from datetime import datetime
from collections import defaultdict


class ApiError(Exception):
    """Base error carrying an HTTP status code."""
    status_code = 500
    error_type = "api_error"

    def __init__(self, message: str, status_code: Optional[int] = None, context: Any = None):
        self.message = message
        self.context = context
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)


class PermissionDenied(ApiError):
    status_code = 403
    error_type = "permission_denied"


class InvalidQuery(ApiError):
    status_code = 400
    error_type = "invalid_query"


class NotFound(ApiError):
    status_code = 404
    error_type = "not_found"


class ExecutionError(ApiError):
    status_code = 500
    error_type = "execution_error"


class ErrorHandler:
    MAX_RECENT_ERRORS = 100

    def __init__(self):
        self.error_stats = defaultdict(int)
        self.recent_errors = []

    def track(self, error: Exception, context: Any = "") -> Dict[str, Any]:
        """Record an error occurrence and return the stored record"""
        error_type = getattr(error, "error_type", type(error).__name__)
        error_info = {
            'error_type': error_type,
            'message': str(error),
            'context': context,
            'timestamp': datetime.now().isoformat()
        }
        self.error_stats[error_type] += 1
        self.recent_errors.append(error_info)
        # Only keep the latest 100 error records
        if len(self.recent_errors) > self.MAX_RECENT_ERRORS:
            self.recent_errors.pop(0)
        return error_info

    def get_error_stats(self) -> Dict[str, Any]:
        """Get error statistics"""
        return {
            'total_errors': sum(self.error_stats.values()),
            'error_types': dict(self.error_stats),
            'recent_errors': self.recent_errors[-10:] if self.recent_errors else []
        }

    def reset(self):
        self.error_stats.clear()
        self.recent_errors.clear()

    def get_user_friendly_error(self, error: Exception) -> str:
        """Generate user-friendly error message"""
        if isinstance(error, PermissionDenied):
            return f"You do not have access to this data: {error.message}"
        if isinstance(error, InvalidQuery):
            return f"The request could not be processed: {error.message}"
        if isinstance(error, NotFound):
            return error.message
        return "An error occurred while processing your request. Please try again."


# Global error handler instance
error_handler = ErrorHandler()

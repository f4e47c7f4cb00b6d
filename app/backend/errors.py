"""
Error taxonomy surfaced at the API boundary.

Every failure that prevents a structurally valid result from reaching the
caller is raised as a ServiceError subclass and rendered once, by the
exception handler in app.py, as {error, errorType, message} with the
matching HTTP status.
"""
from typing import Any, Dict, Optional


class ServiceError(Exception):
    status_code = 500
    error = "Request failed"
    error_type = "INTERNAL"
    default_message = "Something went wrong"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_payload(self) -> Dict[str, Any]:
        return {"error": self.error, "errorType": self.error_type, "message": self.message}

    def headers(self) -> Dict[str, str]:
        return {}


class UnauthorizedError(ServiceError):
    status_code = 401
    error = "Unauthorized"
    error_type = "UNAUTHORIZED"
    default_message = "Missing or invalid user identity"


# Admission

class RateLimitExceededError(ServiceError):
    status_code = 429
    error = "Rate limit exceeded"
    error_type = "RATE_LIMIT_EXCEEDED"
    default_message = "Too many requests. Please try again later."

    def __init__(self, message: Optional[str] = None, retry_after: int = 0):
        super().__init__(message)
        self.retry_after = max(0, int(retry_after))

    def headers(self) -> Dict[str, str]:
        return {"Retry-After": str(self.retry_after)}


class InvalidInputError(ServiceError):
    status_code = 400
    error = "Invalid request"
    error_type = "INVALID_REQUEST"
    default_message = "The request could not be processed"


# Upstream completion service

class UpstreamError(ServiceError):
    """Generic completion-service failure."""
    status_code = 500
    error = "AI request failed"
    error_type = "ANALYSIS_FAILED"
    default_message = "The AI service request failed"

    def __init__(self, message: Optional[str] = None, upstream_status: Optional[int] = None):
        super().__init__(message)
        self.upstream_status = upstream_status


class UpstreamRateLimitedError(UpstreamError):
    status_code = 429
    error = "Rate limited"
    error_type = "RATE_LIMIT"
    default_message = "The AI service is temporarily rate-limited. Please try again in a few moments."


class InsufficientCreditError(UpstreamError):
    status_code = 402
    error = "Insufficient credits"
    error_type = "NO_CREDITS"
    default_message = "Sorry, we're out of credits :("


class UpstreamTimeoutError(UpstreamError):
    status_code = 504
    error = "AI service timed out"
    error_type = "TIMEOUT"
    default_message = "The AI service did not respond in time"


# GitHub

class GitHubRateLimitError(RateLimitExceededError):
    error = "GitHub rate limit exceeded"
    error_type = "GITHUB_RATE_LIMIT"
    default_message = "GitHub API rate limit exceeded. Please try again later."


class RepoFetchError(ServiceError):
    status_code = 502
    error = "Failed to fetch repositories"
    error_type = "REPOS_FAILED"
    default_message = "Could not load repositories from GitHub"


# Model output

class ResponseValidationError(ServiceError):
    status_code = 500
    error = "Analysis failed"
    error_type = "ANALYSIS_FAILED"
    default_message = "The AI response could not be understood"

    def __init__(self, message: Optional[str] = None, raw: str = ""):
        super().__init__(message)
        self.raw = raw


# Persistence

class RecordNotFoundError(ServiceError):
    status_code = 404
    error = "Not found"
    error_type = "NOT_FOUND"
    default_message = "The requested record does not exist"


class PersistenceError(ServiceError):
    status_code = 500
    error = "Persistence failed"
    error_type = "PERSISTENCE_FAILED"
    default_message = "Failed to write to the data store"

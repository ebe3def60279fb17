"""
Custom exception hierarchy for storefront sync operations.

Exception Hierarchy:
    StorefrontError (base)
    ├── StorefrontConnectionError  - Network/timeout issues (page error)
    ├── StorefrontAPIError         - API returned error response
    └── StorefrontDataError        - Invalid response or record structure

    ConfigurationError             - Missing credentials / invalid settings
    PersistenceError               - Durable store operation failed
    ValidationError                - Input validation failed
"""


class StorefrontError(Exception):
    """Base exception for all remote storefront errors."""

    def __init__(self, message: str, details: str = None):
        self.message = message
        self.details = details
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


class StorefrontConnectionError(StorefrontError):
    """
    Network-related errors (timeout, connection refused, etc.).

    Inside pagination these truncate the page loop instead of propagating.
    """

    def __init__(self, message: str, details: str = None, retry_after: int = None):
        super().__init__(message, details)
        self.retry_after = retry_after


class StorefrontAPIError(StorefrontError):
    """
    API returned an error response.

    Either an HTTP status >= 400 or a GraphQL payload carrying `errors`.
    """

    def __init__(
        self,
        message: str,
        details: str = None,
        status_code: int = None,
        error_code: str = None,
    ):
        super().__init__(message, details)
        self.status_code = status_code
        self.error_code = error_code


class StorefrontDataError(StorefrontError):
    """
    Response or record has unexpected structure.

    Raised by the `from_api` constructors when a required field is missing
    or a monetary amount cannot be parsed.
    """

    def __init__(self, message: str, details: str = None, expected: str = None, got: str = None):
        super().__init__(message, details)
        self.expected = expected
        self.got = got


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


class PersistenceError(Exception):
    """
    A durable store operation failed.

    Aborts the running sync phase; the message ends up in the sync log.
    """

    def __init__(self, operation: str, details: str = None):
        self.operation = operation
        self.details = details
        message = f"{operation} failed"
        if details:
            message = f"{message}: {details}"
        super().__init__(message)


class ValidationError(Exception):
    """
    Input validation failed.

    Used for validating caller input (period names, windows) before processing.
    """

    def __init__(self, field: str, message: str, value: any = None):
        self.field = field
        self.message = message
        self.value = value
        super().__init__(f"{field}: {message}")

    def __str__(self) -> str:
        if self.value is not None:
            return f"{self.field}: {self.message} (got: {self.value!r})"
        return f"{self.field}: {self.message}"

"""
Exceptions raised by the HTTP client
"""


class RestClientError(Exception):
    """Base class for request execution errors"""


class RetriesExhaustedError(RestClientError):
    """A transient network error persisted through every retry attempt"""

    def __init__(self, message: str, retries: int):
        super().__init__(message)
        self.retries = retries


class ResponseTooLargeError(RestClientError):
    """The response body exceeded the configured maximum size"""

    def __init__(self, limit: int):
        super().__init__(f"response body exceeds maximum size of {limit} bytes")
        self.limit = limit


class RedirectLimitError(RestClientError):
    """The redirect chain was longer than the configured maximum"""

    def __init__(self, max_redirects: int):
        super().__init__(f"stopped after {max_redirects} redirects")
        self.max_redirects = max_redirects


class RequestCancelledError(RestClientError):
    """The request was cancelled by the caller"""


class PaginationError(RestClientError):
    """A next page could not be fetched or merged"""

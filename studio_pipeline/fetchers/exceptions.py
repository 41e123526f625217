"""Custom exceptions for source fetchers."""


class FetchError(Exception):
    """Base exception for all fetcher errors.

    The orchestrator catches this to mark a single category as failed and
    move on to the next one; it never aborts the whole run.
    """

    pass


class FetchHTTPError(FetchError):
    """A source returned a 4xx/5xx status, or the request could not be sent."""

    def __init__(self, message: str, status_code: int, url: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.url = url


class FetchTimeoutError(FetchError):
    """A source did not answer within the configured timeout."""

    def __init__(self, message: str, url: str) -> None:
        super().__init__(message)
        self.url = url


class FetchResponseError(FetchError):
    """The source answered but the payload could not be understood."""

    pass


class AuthExpiredError(FetchHTTPError):
    """The source rejected our credentials (401/403).

    Kept separate so the run's error can be classified as ``auth_expired``
    and the dashboard can prompt for new credentials.
    """

    pass


class FetcherConfigurationError(FetchError):
    """A fetcher is missing credentials or was given invalid settings."""

    pass

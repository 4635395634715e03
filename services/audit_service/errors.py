TRANSIENT = "transient"
PERMANENT = "permanent"


class AuditServiceError(Exception):
    pass


class FetchError(AuditServiceError):
    """A page could not be retrieved.

    ``kind`` is either ``"transient"`` (timeouts, connection resets, 5xx, 429)
    or ``"permanent"`` (other 4xx, malformed URL, or a transient failure that
    repeated after the retry).
    """

    def __init__(self, url: str, kind: str, message: str, status_code: int | None = None):
        if kind not in (TRANSIENT, PERMANENT):
            raise ValueError(f"unknown fetch error kind: {kind}")
        super().__init__(message)
        self.url = url
        self.kind = kind
        self.message = message
        self.status_code = status_code

    @property
    def is_transient(self) -> bool:
        return self.kind == TRANSIENT

    def as_permanent(self) -> "FetchError":
        return FetchError(self.url, PERMANENT, f"{self.message} (after retry)", status_code=self.status_code)

    def __repr__(self) -> str:
        return f"FetchError(url={self.url!r}, kind={self.kind!r}, status_code={self.status_code!r}, message={self.message!r})"


class ParseError(AuditServiceError):
    pass


class ConfigurationError(AuditServiceError):
    pass


class JobHandlerError(AuditServiceError):
    pass


class PersistenceError(AuditServiceError):
    pass


class CrawlAbortedError(AuditServiceError):
    pass


class AuditClosedError(CrawlAbortedError):
    """The audit reached a terminal status outside this session; its stored outcome stands."""

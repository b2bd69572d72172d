"""Connector error definitions.

Every failure the connector surfaces to its callers is one of the classes
below. Each carries an :class:`ErrorKind` so the surrounding application can
tell "not configured", "needs reconnect" and "transient failure" apart
without inspecting messages.
"""

from enum import Enum


class ErrorKind(str, Enum):
    """What the caller can do about a failure."""

    NOT_CONFIGURED = "not_configured"
    NEEDS_RECONNECT = "needs_reconnect"
    TRANSIENT = "transient"
    INVALID_REQUEST = "invalid_request"
    NOT_FOUND = "not_found"
    INTEGRITY = "integrity"


# Graph API error codes that mean "slow down and retry later"
THROTTLING_CODES = frozenset({4, 17, 32, 613})
# Graph API error codes for an invalid or expired session/access token
INVALID_SESSION_CODES = frozenset({102, 190})


class ConnectorError(Exception):
    """Base exception for connector errors.

    Attributes:
        code: Stable machine-readable error code
        message: Human-readable error message
        kind: What the caller can do about it
        status_code: HTTP status code used by the API layer
    """

    code = "E_CONNECTOR"
    kind = ErrorKind.INVALID_REQUEST
    status_code = 400

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ConfigurationError(ConnectorError):
    """The encryption master secret (or other required setting) is missing."""

    code = "E_NOT_CONFIGURED"
    kind = ErrorKind.NOT_CONFIGURED
    status_code = 503


class ValidationError(ConnectorError):
    """Malformed input credentials or request parameters."""

    code = "E_INVALID_REQUEST"
    kind = ErrorKind.INVALID_REQUEST
    status_code = 422


class DecryptionError(ConnectorError):
    """Authentication-tag failure: tampered, corrupt, or wrong-key ciphertext."""

    code = "E_DECRYPTION_FAILED"
    kind = ErrorKind.INTEGRITY
    status_code = 500

    def __init__(self, message: str = "Failed to decrypt value"):
        super().__init__(message)


class StateError(ConnectorError):
    """Invalid, expired, or already-used OAuth state."""

    code = "E_INVALID_STATE"
    kind = ErrorKind.INVALID_REQUEST
    status_code = 400

    def __init__(self, message: str = "Invalid or expired OAuth state"):
        super().__init__(message)


class NotFoundError(ConnectorError):
    """Missing credential, account, or content record."""

    code = "E_NOT_FOUND"
    kind = ErrorKind.NOT_FOUND
    status_code = 404


class ExternalApiError(ConnectorError):
    """Non-success response (or transport failure) from the OAuth platform.

    The upstream message is kept verbatim in ``message``. ``kind`` is derived
    from the upstream HTTP status and Graph API error code.
    """

    code = "E_EXTERNAL_API"
    status_code = 502

    def __init__(
        self,
        message: str,
        *,
        http_status: int | None = None,
        error_code: int | None = None,
        error_type: str | None = None,
        transport_error: bool = False,
    ):
        super().__init__(message)
        self.http_status = http_status
        self.error_code = error_code
        self.error_type = error_type
        self.transport_error = transport_error
        self.kind = self._classify()
        if self.kind == ErrorKind.TRANSIENT:
            self.status_code = 503

    def _classify(self) -> ErrorKind:
        if self.transport_error:
            return ErrorKind.TRANSIENT
        if self.error_code in INVALID_SESSION_CODES:
            return ErrorKind.NEEDS_RECONNECT
        if self.error_code in THROTTLING_CODES:
            return ErrorKind.TRANSIENT
        if self.http_status is not None and self.http_status >= 500:
            return ErrorKind.TRANSIENT
        return ErrorKind.INVALID_REQUEST

    @property
    def is_transient(self) -> bool:
        return self.kind == ErrorKind.TRANSIENT

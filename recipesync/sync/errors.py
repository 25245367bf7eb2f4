"""Failure classification for remote and cache errors.

classify_error() is the one place that decides how a failure is handled:

- TRANSIENT: serve the cache and raise the offline flag, no message.
- STRUCTURAL: the record type is not provisioned yet; an empty result.
- UNSUPPORTED_PARTIAL: the shared partition refused a zone-wide query;
  that partition contributes nothing.
- PERMISSION, DECODING: surfaced to the caller.
- NOT_FOUND: success for deletes, surfaced otherwise.
"""

from enum import Enum

import httpx

from ..remote.base import ErrorCode, RemoteStoreError


class ErrorClass(Enum):
    TRANSIENT = "transient"
    STRUCTURAL = "structural"
    UNSUPPORTED_PARTIAL = "unsupported_partial"
    PERMISSION = "permission"
    DECODING = "decoding"
    NOT_FOUND = "not_found"

    @property
    def is_silent(self) -> bool:
        """True if the failure never produces a user-facing message."""
        return self in (
            ErrorClass.TRANSIENT,
            ErrorClass.STRUCTURAL,
            ErrorClass.UNSUPPORTED_PARTIAL,
        )


_CODE_CLASSES = {
    ErrorCode.NETWORK_UNAVAILABLE: ErrorClass.TRANSIENT,
    ErrorCode.NETWORK_FAILURE: ErrorClass.TRANSIENT,
    ErrorCode.TIMEOUT: ErrorClass.TRANSIENT,
    ErrorCode.DNS_FAILURE: ErrorClass.TRANSIENT,
    ErrorCode.SERVICE_UNAVAILABLE: ErrorClass.TRANSIENT,
    ErrorCode.RATE_LIMITED: ErrorClass.TRANSIENT,
    ErrorCode.ZONE_BUSY: ErrorClass.TRANSIENT,
    ErrorCode.UNKNOWN_RECORD_TYPE: ErrorClass.STRUCTURAL,
    ErrorCode.NOT_QUERYABLE: ErrorClass.STRUCTURAL,
    ErrorCode.WIDE_QUERY_UNSUPPORTED: ErrorClass.UNSUPPORTED_PARTIAL,
    ErrorCode.PERMISSION_FAILURE: ErrorClass.PERMISSION,
    ErrorCode.SERVER_REJECTED: ErrorClass.PERMISSION,
    ErrorCode.ZONE_NOT_FOUND: ErrorClass.PERMISSION,
    ErrorCode.INVALID_PAYLOAD: ErrorClass.DECODING,
    ErrorCode.NOT_FOUND: ErrorClass.NOT_FOUND,
}

# Codes meaning a collaborator lost access to a shared source
REVOKED_CODES = frozenset(
    {ErrorCode.ZONE_NOT_FOUND, ErrorCode.NOT_FOUND, ErrorCode.PERMISSION_FAILURE}
)


def classify_error(exc: BaseException) -> ErrorClass:
    """Map any failure onto the closed error taxonomy.

    Args:
        exc: Exception raised by a RemoteStore, the cache or a decoder.

    Returns:
        The ErrorClass; unrecognised failures are DECODING so they surface.
    """
    if isinstance(exc, RemoteStoreError):
        if exc.code == ErrorCode.PARTIAL_FAILURE:
            if exc.sub_errors and all(
                classify_error(e) == ErrorClass.TRANSIENT for e in exc.sub_errors
            ):
                return ErrorClass.TRANSIENT
            return ErrorClass.DECODING
        return _CODE_CLASSES.get(exc.code, ErrorClass.DECODING)

    if isinstance(exc, (httpx.TransportError, ConnectionError, TimeoutError)):
        return ErrorClass.TRANSIENT

    # RecordDecodeError and other malformed-data errors land here too
    return ErrorClass.DECODING


def is_revoked(exc: BaseException) -> bool:
    """True if the error means access to a shared zone is gone."""
    return isinstance(exc, RemoteStoreError) and exc.code in REVOKED_CODES


def describe_error(action: str, exc: BaseException) -> str:
    """Build the user-facing message for a surfaced failure."""
    error_class = classify_error(exc)
    if error_class == ErrorClass.PERMISSION:
        return f"Failed to {action}: you do not have permission ({exc})"
    if error_class == ErrorClass.NOT_FOUND:
        return f"Failed to {action}: the item no longer exists"
    if error_class == ErrorClass.DECODING:
        return f"Failed to {action}: unexpected data from the server ({exc})"
    if error_class == ErrorClass.TRANSIENT:
        return f"Failed to {action}: the network is unavailable"
    return f"Failed to {action}: {exc}"

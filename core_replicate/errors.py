"""Error taxonomy for the replication workflow.

Every failure that leaves a step is expressed as a :class:`ReplicationError`.  Errors raised
by boto3 are converted with :func:`classify_error` so the retry policy and the workflow driver
only ever deal with this hierarchy.
"""

from typing import Any

from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    NoCredentialsError,
    PartialCredentialsError,
)

AUTHORIZATION_ERROR_CODES = frozenset(
    [
        "AccessDenied",
        "AccessDeniedException",
        "UnauthorizedOperation",
        "AuthFailure",
        "InvalidClientTokenId",
        "ExpiredToken",
        "ExpiredTokenException",
        "OptInRequired",
    ]
)

TRANSIENT_ERROR_CODES = frozenset(
    [
        "Throttling",
        "ThrottlingException",
        "RequestLimitExceeded",
        "TooManyRequestsException",
        "ServiceUnavailable",
        "ServiceUnavailableException",
        "InternalError",
        "InternalFailure",
        "InternalServiceError",
        "RequestTimeout",
        "RequestTimeoutException",
        "KMSInternalException",
        "DependencyTimeoutException",
        "ServiceException",
        "SdkClientException",
    ]
)

RESOURCE_MISSING_ERROR_CODES = frozenset(["NotFoundException"])


class ReplicationError(Exception):
    """Base class for every error the replication workflow reports."""

    retryable = False

    def __init__(self, message: str, *, code: str | None = None, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

    @property
    def error_type(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict[str, Any]:
        """Structured form recorded as a job's ``errorInfo``."""
        data: dict[str, Any] = {"Error": self.error_type, "Message": self.message}
        if self.code:
            data["Code"] = self.code
        if self.details:
            data["Details"] = self.details
        return data

    def __str__(self) -> str:
        return self.message


class AuthorizationError(ReplicationError):
    """Role assumption or a permission check was denied."""


class TransientCloudError(ReplicationError):
    """Throttling, service-side faults and connection problems."""

    retryable = True


class ResourceMissingError(ReplicationError):
    """The named resource does not exist (an encryption key alias, for example)."""


class CopyFailedError(ReplicationError):
    """The destination reported the snapshot copy in an error state."""


class RegistrationError(ReplicationError):
    """Registering or tagging the destination image failed."""


class ManifestFormatError(ReplicationError):
    """The build artifact or its manifest is missing or malformed."""


class RegionNotFoundError(ReplicationError):
    """The manifest has no image for the requested region."""


class SharingGrantError(ReplicationError):
    """Granting create-volume permission on a source snapshot failed."""


class InvalidRequestError(ReplicationError):
    """Malformed input or a non-transient rejection from a service."""


class RetriesExhaustedError(ReplicationError):
    """A transient error persisted through every allowed attempt."""


class NotificationError(ReplicationError):
    """Reporting an outcome to the pipeline failed or was attempted twice."""


def error_code(e: ClientError) -> str:
    return e.response.get("Error", {}).get("Code", "")


def classify_error(
    e: Exception,
    fallback: type[ReplicationError] = InvalidRequestError,
    transient_codes: frozenset[str] | set[str] | None = None,
) -> ReplicationError | None:
    """
    Map an exception raised by a remote call onto the replication error taxonomy.

    :param e: The exception raised by boto3 (or already a ReplicationError)
    :type e: Exception
    :param fallback: Error class used for service errors that are neither authorization,
                     transient nor missing-resource errors
    :type fallback: type[ReplicationError]
    :param transient_codes: Additional error codes the caller wants treated as transient
    :type transient_codes: set[str] | None
    :return: The classified error, or None when the exception did not come from a remote call
    :rtype: ReplicationError | None
    """
    if isinstance(e, ReplicationError):
        return e

    if isinstance(e, ClientError):
        code = error_code(e)
        message = e.response.get("Error", {}).get("Message") or str(e)
        status = e.response.get("ResponseMetadata", {}).get("HTTPStatusCode") or 0
        operation = getattr(e, "operation_name", None)
        details = {"Operation": operation} if operation else None

        if code in AUTHORIZATION_ERROR_CODES:
            return AuthorizationError(message, code=code, details=details)
        if code in TRANSIENT_ERROR_CODES or (transient_codes and code in transient_codes) or status >= 500:
            return TransientCloudError(message, code=code, details=details)
        if code in RESOURCE_MISSING_ERROR_CODES:
            return ResourceMissingError(message, code=code, details=details)
        return fallback(message, code=code, details=details)

    if isinstance(e, (NoCredentialsError, PartialCredentialsError)):
        return AuthorizationError(str(e), code=type(e).__name__)

    if isinstance(e, BotoCoreError):
        return TransientCloudError(str(e), code=type(e).__name__)

    return None


def as_replication_error(e: Exception) -> ReplicationError:
    """Classify ``e``, wrapping anything unrecognised so the failure path can still report it."""
    error = classify_error(e)
    if error is None:
        error = ReplicationError(f"{type(e).__name__}: {e}", code=type(e).__name__)
    return error

"""
Exception classes for StorageDrive
"""

from typing import List, Optional


class StorageDriveException(Exception):
    """
    Base exception for all StorageDrive errors.

    Carries enough context (bucket, path, operation) to build a user-facing
    message. ``operation`` is filled in by the navigator when the error leaves a
    top-level call.
    """

    def __init__(
        self,
        message: str,
        status_code: int = None,
        error_code: str = None,
        bucket: Optional[str] = None,
        path: Optional[str] = None,
        operation: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code
        self.bucket = bucket
        self.path = path
        self.operation = operation


class NotFoundException(StorageDriveException):
    """Thrown when a bucket or object does not exist."""

    def __init__(self, message: str, bucket: Optional[str] = None, path: Optional[str] = None):
        super().__init__(
            message,
            status_code=404,
            error_code="NotFound",
            bucket=bucket,
            path=path,
        )


class BucketNotFoundException(NotFoundException):
    """Thrown when a bucket is not found."""

    def __init__(self, bucket_name: str):
        super().__init__(f"Bucket '{bucket_name}' not found.", bucket=bucket_name)


class ObjectNotFoundException(NotFoundException):
    """Thrown when an object is not found."""

    def __init__(self, bucket_name: str, object_name: str):
        super().__init__(
            f"Object '{object_name}' not found in bucket '{bucket_name}'.",
            bucket=bucket_name,
            path=object_name,
        )


class PermissionDeniedException(StorageDriveException):
    """Thrown when access to a project, bucket or object is denied."""

    def __init__(self, message: str, bucket: Optional[str] = None, path: Optional[str] = None):
        super().__init__(
            message,
            status_code=403,
            error_code="PermissionDenied",
            bucket=bucket,
            path=path,
        )


class AuthenticationException(StorageDriveException):
    """Thrown when the service rejects the credentials."""

    def __init__(self, message: str):
        super().__init__(
            message,
            status_code=401,
            error_code="InvalidCredentials"
        )


class ConflictException(StorageDriveException):
    """Thrown when the service reports a conflicting state, e.g. deleting a bucket that still has objects."""

    def __init__(self, message: str, bucket: Optional[str] = None, path: Optional[str] = None):
        super().__init__(
            message,
            status_code=409,
            error_code="Conflict",
            bucket=bucket,
            path=path,
        )


class ServerException(StorageDriveException):
    """Thrown when the server returns an error."""

    def __init__(self, message: str, status_code: int, error_code: str = None):
        super().__init__(message, status_code, error_code)


class NotEmptyException(StorageDriveException):
    """Thrown when removing a populated folder or bucket without recursion."""

    def __init__(self, bucket: str, path: Optional[str] = None):
        target = f"{bucket}/{path}" if path else bucket
        super().__init__(
            f"'{target}' has children; use a recursive remove to delete it.",
            error_code="NotEmpty",
            bucket=bucket,
            path=path,
        )


class InvalidRelationException(StorageDriveException):
    """Thrown when a child path does not start with its supposed parent."""

    def __init__(self, child: str, parent: str):
        super().__init__(
            f"'{child}' does not start with '{parent}'.",
            error_code="InvalidRelation",
            path=child,
        )


class InvalidOperationException(StorageDriveException):
    """Thrown when an operation makes no sense for the kind of path it was given."""


class TransferFailedException(StorageDriveException):
    """Thrown when an upload or download fails. The network error is the ``__cause__``."""

    def __init__(self, message: str, bucket: Optional[str] = None, path: Optional[str] = None):
        super().__init__(message, error_code="TransferFailed", bucket=bucket, path=path)


class CancelledException(StorageDriveException):
    """Thrown when the caller's stop signal is observed mid-operation."""

    def __init__(self, message: str = "Operation stopped by request.", bucket: Optional[str] = None, path: Optional[str] = None):
        super().__init__(message, error_code="Cancelled", bucket=bucket, path=path)


class RecursiveOperationException(StorageDriveException):
    """
    Thrown when one or more children of a recursive copy or remove fail.

    Children that completed are not rolled back. ``failures`` holds every
    ``(path, exception)`` pair; the first failure is chained as ``__cause__``.
    """

    def __init__(
        self,
        action: str,
        bucket: str,
        failures: List[tuple],
        completed: int,
    ):
        failed_path, first = failures[0]
        super().__init__(
            f"Failed to {action} '{bucket}/{failed_path}': {first}. "
            f"{completed} other object(s) were already processed and were not rolled back.",
            error_code="RecursiveOperationFailed",
            bucket=bucket,
            path=failed_path,
        )
        self.failures = failures
        self.completed = completed

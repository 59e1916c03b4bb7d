"""Error taxonomy shared by the credential backend and its HTTP surface."""

from __future__ import annotations

from fastapi import status


class BackendError(Exception):
    """Base class for every failure surfaced to callers of the backend."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(BackendError):
    status_code = status.HTTP_400_BAD_REQUEST


class MissingField(ValidationError):
    def __init__(self, field: str) -> None:
        super().__init__(f"missing {field}")
        self.field = field


class NotConfigured(BackendError):
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str = "connection is not configured") -> None:
        super().__init__(message)


class UnknownRole(BackendError):
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, name: str) -> None:
        super().__init__(f"unknown role: {name}")
        self.name = name


class UnknownSecretType(BackendError):
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, secret_type: str) -> None:
        super().__init__(f"unknown secret type: {secret_type}")
        self.secret_type = secret_type


class UnknownLease(BackendError):
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, lease_id: str) -> None:
        super().__init__(f"unknown lease: {lease_id}")
        self.lease_id = lease_id


class MalformedSecret(BackendError):
    pass


class StorageError(BackendError):
    pass


class UpstreamError(BackendError):
    """Failures talking to the npm registry."""

    status_code = status.HTTP_502_BAD_GATEWAY


class UpstreamUnreachable(UpstreamError):
    pass


class UpstreamAuthFailed(UpstreamError):
    pass


class TokenNotFound(UpstreamError):
    """The registry has no token with the requested id."""

    status_code = status.HTTP_404_NOT_FOUND


class UpstreamTokenCreationFailed(UpstreamError):
    pass


class UpstreamRevokeFailed(UpstreamError):
    pass

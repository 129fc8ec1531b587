"""Error taxonomy shared by the broker backend and its host service.

Every :class:`BrokerError` is user-facing: the host reports its message to the
caller and leaves prior state untouched. :class:`StorageFault` is deliberately
not a :class:`BrokerError`; it signals a broken backing store and propagates
uninterpreted.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:  # pragma: no cover
    from .schemas import RotationResult


class BrokerError(Exception):
    """Base class for user-facing broker errors."""


class ConfigError(BrokerError):
    """The mount configuration cannot serve the request."""


class NotConfiguredError(ConfigError):
    def __init__(self, message: str = "backend is not configured. did you write 'config/token'?") -> None:
        super().__init__(message)


class IncompleteConfigurationError(ConfigError):
    pass


class InvalidRequestError(ConfigError):
    pass


class DecodeError(BrokerError):
    """The root credential could not be decoded."""


class LeaseError(BrokerError):
    """No usable TTL could be derived from the lease policy."""


class UpstreamError(BrokerError):
    """Base class for failures talking to Grafana Cloud."""


class UpstreamAPIError(UpstreamError):
    """Grafana Cloud answered with a structured error payload."""

    def __init__(
        self,
        code: str,
        message: str,
        *,
        status_code: int | None = None,
        url: str | None = None,
        context: str | None = None,
    ) -> None:
        self.code = code
        self.message = message
        self.status_code = status_code
        self.url = url
        self.context = context
        detail = f"grafana cloud api error code: {code}, err: {message}"
        super().__init__(f"{context}: {detail}" if context else detail)


class TransportError(UpstreamError):
    """Grafana Cloud could not be reached."""


class LookupFailure(BrokerError):
    pass


class TokenNotFoundError(LookupFailure):
    def __init__(self, token_ref: str) -> None:
        self.token_ref = token_ref
        super().__init__(f"token '{token_ref}' was not found in grafana cloud")


class AccessPolicyNotFoundError(LookupFailure):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"access policy '{name}' was not found")


class LeaseNotFoundError(LookupFailure):
    def __init__(self, lease_id: str) -> None:
        self.lease_id = lease_id
        super().__init__(f"lease '{lease_id}' not found")


class AmbiguousLookupError(LookupFailure):
    """A name lookup matched zero or several tokens instead of exactly one."""

    def __init__(self, name: str, count: int) -> None:
        self.name = name
        self.count = count
        super().__init__(f"found an unexpected number of tokens with name '{name}': {count}")


class OrphanedCredentialError(BrokerError):
    """Rotation committed the new root credential but the old one survived upstream."""

    def __init__(
        self,
        result: "RotationResult",
        *,
        orphan_id: Optional[str],
        orphan_name: Optional[str],
        cause: BaseException,
    ) -> None:
        self.result = result
        self.orphan_id = orphan_id
        self.orphan_name = orphan_name
        self.cause = cause
        super().__init__(
            f"root credential rotated to '{result.name}' but deleting the previous token "
            f"'{orphan_name or orphan_id}' failed; remove it manually: {cause}"
        )


class StorageFault(Exception):
    """The storage collaborator failed or returned unreadable data."""

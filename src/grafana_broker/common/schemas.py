"""Shared data models for the Grafana Cloud token broker."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


class UpstreamModel(BaseModel):
    """Base for Grafana Cloud payloads, which use camelCase keys on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class CreateTokenRequest(UpstreamModel):
    access_policy_id: str
    name: str
    display_name: str
    expires_at: datetime


class TokenResponse(UpstreamModel):
    """Token record returned by Grafana Cloud. ``token`` is only set on creation."""

    id: str
    access_policy_id: str
    name: str
    display_name: str = ""
    expires_at: Optional[datetime] = None
    first_used_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    token: Optional[str] = None


class TokenListResponse(UpstreamModel):
    items: list[TokenResponse] = Field(default_factory=list)


class LabelPolicy(UpstreamModel):
    selector: Optional[str] = None


class Realm(UpstreamModel):
    type: Optional[str] = None
    identifier: Optional[str] = None
    label_policies: list[LabelPolicy] = Field(default_factory=list)


class AccessPolicyConditions(UpstreamModel):
    allowed_subnets: list[str] = Field(default_factory=list)


class AccessPolicy(UpstreamModel):
    id: Optional[str] = None
    org_id: Optional[str] = None
    name: str
    display_name: str = ""
    scopes: list[str] = Field(default_factory=list)
    realms: list[Realm] = Field(default_factory=list)
    conditions: Optional[AccessPolicyConditions] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class APIErrorPayload(BaseModel):
    code: str = ""
    message: str = ""


class RootCredentialConfig(BaseModel):
    """The single administrator credential configured on a mount."""

    token: str
    token_id: Optional[str] = None
    access_policy_id: Optional[str] = None
    name: Optional[str] = None
    org_id: Optional[str] = None
    region: Optional[str] = None
    display_name: Optional[str] = None
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def public_view(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude={"token"})


class LeaseConfig(BaseModel):
    """Operator TTL overrides, in seconds. ``None`` falls back to system defaults."""

    ttl: Optional[int] = None
    max_ttl: Optional[int] = None

    @model_validator(mode="after")
    def _check_bounds(self) -> "LeaseConfig":
        if self.ttl is not None and self.ttl <= 0:
            raise ValueError("ttl must be a positive number of seconds")
        if self.max_ttl is not None and self.max_ttl <= 0:
            raise ValueError("max_ttl must be a positive number of seconds")
        if self.ttl is not None and self.max_ttl is not None and self.ttl > self.max_ttl:
            raise ValueError("ttl cannot be greater than max_ttl")
        return self


class TokenLeaseData(BaseModel):
    """Bookkeeping attached to a lease so the token can later be renewed or revoked."""

    id: str
    name: str
    access_policy_id: str


class IssuedCredential(BaseModel):
    token: TokenResponse
    ttl_seconds: int
    max_ttl_seconds: int
    renewable: bool
    internal_data: TokenLeaseData

    def response_data(self) -> dict[str, Any]:
        return {
            "id": self.token.id,
            "access_policy_id": self.token.access_policy_id,
            "name": self.token.name,
            "token": self.token.token,
            "expires_at": self.token.expires_at.isoformat() if self.token.expires_at else None,
        }


class RenewResult(BaseModel):
    ttl_seconds: int
    max_ttl_seconds: int
    renewable: bool
    expires_at: datetime


class RotationResult(BaseModel):
    name: str
    token_id: str
    access_policy_id: str


class LeaseRecord(BaseModel):
    """Host-side lease wrapping a derived token."""

    lease_id: str
    secret_type: str
    policy_name: str
    internal_data: dict[str, Any]
    issue_time: datetime
    expire_time: datetime
    last_renewal_time: Optional[datetime] = None
    ttl_seconds: int
    max_ttl_seconds: int
    renewable: bool


class ConfigTokenWriteRequest(BaseModel):
    token: str = Field(..., min_length=1)


class LeaseConfigWriteRequest(BaseModel):
    ttl: Optional[int] = None
    max_ttl: Optional[int] = None


class AccessPolicyWriteRequest(BaseModel):
    """Accepts the Grafana Cloud access policy body as an object or a JSON string."""

    policy: dict[str, Any] = Field(default_factory=dict)

    @field_validator("policy", mode="before")
    @classmethod
    def _parse_policy(cls, value):
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError as exc:
                raise ValueError(f"cannot parse policy: {exc}") from exc
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise ValueError("policy must be a JSON object")
        return value


class LeaseRenewRequest(BaseModel):
    lease_id: str = Field(..., min_length=1)


class LeaseRevokeRequest(BaseModel):
    lease_id: str = Field(..., min_length=1)

"""Registered JWT claims (RFC 7519) and temporal claim validation."""

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field

from voucher_jose.config import get_settings
from voucher_jose.core.errors import ExpiredError, MissingClaimError, NotYetValidError


class ValidationOptions(BaseModel):
    """Options for temporal claim validation.

    By default no temporal claim is required; the ones present must hold.
    """

    leeway: int = Field(
        default_factory=lambda: get_settings().claims_leeway_seconds,
        ge=0,
        description="Allowed clock skew in seconds",
    )
    require_exp: bool = False
    require_nbf: bool = False
    require_iat: bool = False
    now: datetime | None = Field(default=None, description="Validation time, defaults to the current time")


class ClaimsSet(BaseModel):
    """Registered claims plus any private claims."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    issuer: str | None = Field(default=None, alias="iss")
    subject: str | None = Field(default=None, alias="sub")
    audience: str | list[str] | None = Field(default=None, alias="aud")
    expiry: int | None = Field(default=None, alias="exp")
    not_before: int | None = Field(default=None, alias="nbf")
    issued_at: int | None = Field(default=None, alias="iat")
    id: str | None = Field(default=None, alias="jti")

    def validate_claims(self, options: ValidationOptions | None = None) -> None:
        """Check ``exp``, ``nbf`` and ``iat`` against the current time."""
        options = options or ValidationOptions()
        now = options.now or datetime.now(timezone.utc)
        timestamp = int(now.timestamp())

        if self.expiry is None:
            if options.require_exp:
                raise MissingClaimError("exp")
        elif timestamp >= self.expiry + options.leeway:
            raise ExpiredError(f"Token expired at {self.expiry}")

        if self.not_before is None:
            if options.require_nbf:
                raise MissingClaimError("nbf")
        elif timestamp + options.leeway < self.not_before:
            raise NotYetValidError(f"Token is not valid before {self.not_before}")

        if self.issued_at is None:
            if options.require_iat:
                raise MissingClaimError("iat")
        elif timestamp + options.leeway < self.issued_at:
            raise NotYetValidError(f"Token was issued in the future at {self.issued_at}")

"""Pydantic models for request/response validation."""
from datetime import datetime
from typing import Literal, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..shared.models import (
    AGE_ATTESTATION_FIELD,
    PRIVACY_POLICY_FIELD,
    PublicVote,
    Stats,
    VoteSubmission,
    normalize_country_code,
    normalize_email,
    validate_country_code,
    validate_email_format,
)


class VoteRequest(BaseModel):
    """Vote submission request model."""

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "email": "voter@example.org",
                "countryCode": "DE",
                PRIVACY_POLICY_FIELD: "on",
                AGE_ATTESTATION_FIELD: "on"
            }
        }
    )

    email: str = Field(..., description="Voter email, the confirmation link is sent there")
    country_code: str = Field(..., alias="countryCode", description="ISO 3166-1 alpha-2 country code")
    privacy_policy: Optional[str] = Field(default=None, alias=PRIVACY_POLICY_FIELD)
    age_attestation: Optional[str] = Field(default=None, alias=AGE_ATTESTATION_FIELD)

    @field_validator("email")
    @classmethod
    def validate_email(cls, v):
        """Validate and normalize the email address."""
        email = normalize_email(v)
        if not validate_email_format(email):
            raise ValueError("Email address is not valid")
        return email

    @field_validator("country_code")
    @classmethod
    def validate_country(cls, v):
        """Validate country code is two letters."""
        code = normalize_country_code(v)
        if not validate_country_code(code):
            raise ValueError("Country code must be two letters")
        return code

    def to_submission(self) -> VoteSubmission:
        """Convert to the domain submission."""
        return VoteSubmission(
            email=self.email,
            country_code=self.country_code,
            privacy_policy=self.privacy_policy,
            age_attestation=self.age_attestation,
        )


class PublicVoteResponse(BaseModel):
    """Public part of a vote."""

    country_code: str = Field(..., description="Country of the voter")
    created: datetime = Field(..., description="Submission timestamp")
    confirmed: Optional[datetime] = Field(None, description="Confirmation timestamp")

    @classmethod
    def from_public(cls, vote: PublicVote) -> "PublicVoteResponse":
        return cls(
            country_code=vote.country_code,
            created=vote.created,
            confirmed=vote.confirmed,
        )


class CountryCountResponse(BaseModel):
    code: str
    count: int


class StatsResponse(BaseModel):
    """Aggregated results response model."""

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "total": 3,
                "countries": [{"code": "DE", "count": 2}, {"code": "FR", "count": 1}],
                "recent": [
                    {
                        "country_code": "DE",
                        "created": "2024-01-15T10:00:00Z",
                        "confirmed": "2024-01-15T10:30:00Z"
                    }
                ],
                "last_confirmed": "2024-01-15T10:30:00Z"
            }
        }
    )

    total: int = Field(..., description="Number of confirmed votes")
    countries: list[CountryCountResponse] = Field(..., description="Votes per country, most first")
    recent: list[PublicVoteResponse] = Field(..., description="Latest confirmed votes")
    last_confirmed: Optional[datetime] = Field(None, description="Latest confirmation timestamp")

    @classmethod
    def from_stats(cls, stats: Stats) -> "StatsResponse":
        return cls(
            total=stats.total,
            countries=[CountryCountResponse(code=c.code, count=c.count) for c in stats.countries],
            recent=[PublicVoteResponse.from_public(v) for v in stats.recent],
            last_confirmed=stats.last_confirmed,
        )


class RefreshResponse(BaseModel):
    status: Literal["done"] = "done"
    total: int = Field(..., description="Number of confirmed votes after the refresh")


class HealthResponse(BaseModel):
    """Health check response model."""

    status: Literal["healthy", "unhealthy"] = Field(..., description="Overall health status")
    services: dict = Field(..., description="Status of individual services")
    cached_votes: int = Field(0, description="Entries in the confirmation cache")
    timestamp: datetime = Field(..., description="Health check timestamp")


class ErrorResponse(BaseModel):
    """Error response model."""

    detail: str = Field(..., description="Error message")

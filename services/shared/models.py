"""
Shared data models and utilities for the vote confirmation service.

This module contains:
- VoteSubmission / VoteRecord: what a voter sends and what is stored
- PublicVote: the privacy-stripped projection served to the public
- Stats / CountryCount: aggregated results computed from the public view
- Consent constants and format validation functions
"""

import re
from dataclasses import dataclass, asdict, replace
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any, Tuple


# Payload keys of the two consent checkboxes and the value a checked box posts
PRIVACY_POLICY_FIELD = "I accept privacy policy and terms of service"
AGE_ATTESTATION_FIELD = "I am over 18 years old"
CONSENT_ACCEPTED = "on"

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
COUNTRY_CODE_PATTERN = re.compile(r"^[A-Z]{2}$")


class SubmissionStatus(str, Enum):
    """Outcome of a vote submission."""
    ACCEPTED = "accepted"
    CONFLICT = "conflict"
    REJECTED = "rejected"


class VoteEvent(str, Enum):
    """Lifecycle events handed to the job dispatcher."""
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"


@dataclass(frozen=True)
class VoteSubmission:
    """
    A vote as sent by the voter, before anything is stored.

    Attributes:
        email: Voter email (normalized)
        country_code: ISO 3166-1 alpha-2 country code (upper-case)
        privacy_policy: Raw value of the privacy policy checkbox
        age_attestation: Raw value of the age checkbox
    """
    email: str
    country_code: str
    privacy_policy: Optional[str] = None
    age_attestation: Optional[str] = None

    def has_consent(self) -> bool:
        """Both consent boxes must be explicitly checked."""
        return (
            self.privacy_policy == CONSENT_ACCEPTED
            and self.age_attestation == CONSENT_ACCEPTED
        )


@dataclass(frozen=True)
class VoteRecord:
    """
    Durable vote record.

    `confirmed` is None while the vote is pending. `disabled` is only ever
    set by administrators and hides the record from every public view.
    """
    email: str
    country_code: str
    created: datetime
    privacy_policy: Optional[str] = None
    age_attestation: Optional[str] = None
    confirmed: Optional[datetime] = None
    disabled: bool = False
    id: Optional[str] = None

    @property
    def is_public(self) -> bool:
        """True once confirmed, unless disabled."""
        return self.confirmed is not None and not self.disabled

    def with_id(self, vote_id: str) -> 'VoteRecord':
        """Copy of this record with the store-assigned id."""
        return replace(self, id=vote_id)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data["created"] = self.created.isoformat()
        data["confirmed"] = self.confirmed.isoformat() if self.confirmed else None
        return data

    @classmethod
    def from_submission(cls, submission: VoteSubmission, created: datetime) -> 'VoteRecord':
        """New pending record for a submission."""
        return cls(
            email=submission.email,
            country_code=submission.country_code,
            created=created,
            privacy_policy=submission.privacy_policy,
            age_attestation=submission.age_attestation,
        )


@dataclass(frozen=True)
class PublicVote:
    """Projection of a vote that is safe to expose: no email, no consent answers."""
    country_code: str
    created: datetime
    confirmed: Optional[datetime]

    def sort_key(self) -> tuple:
        """Cache ordering key, compared descending."""
        return (self.confirmed, self.created, self.country_code)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "country_code": self.country_code,
            "created": self.created.isoformat(),
            "confirmed": self.confirmed.isoformat() if self.confirmed else None,
        }


@dataclass(frozen=True)
class CountryCount:
    code: str
    count: int


@dataclass(frozen=True)
class Stats:
    """
    Public summary of the confirmed votes.

    Attributes:
        total: Number of confirmed, enabled votes
        countries: Per-country counts, most votes first
        recent: Most recently confirmed votes, newest first
        last_confirmed: Timestamp of the newest confirmation
    """
    total: int = 0
    countries: Tuple[CountryCount, ...] = ()
    recent: Tuple[PublicVote, ...] = ()
    last_confirmed: Optional[datetime] = None


def project_public(record: VoteRecord) -> PublicVote:
    """
    Strip a record down to its public part.

    Args:
        record: Stored vote record

    Returns:
        PublicVote: country, creation and confirmation timestamps only
    """
    return PublicVote(
        country_code=record.country_code,
        created=record.created,
        confirmed=record.confirmed,
    )


def normalize_email(email: str) -> str:
    return email.strip().lower()


def normalize_country_code(code: str) -> str:
    return code.strip().upper()


def validate_email_format(email: str) -> bool:
    """
    Validate email format.

    Args:
        email: Email address to validate

    Returns:
        bool: True if valid format
    """
    return bool(EMAIL_PATTERN.match(email)) and len(email) <= 254


def validate_country_code(code: str) -> bool:
    """
    Validate country code format (two letters, upper-case).

    Args:
        code: Country code to validate

    Returns:
        bool: True if valid format
    """
    return bool(COUNTRY_CODE_PATTERN.match(code))

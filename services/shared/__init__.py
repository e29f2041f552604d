"""
Shared utilities and models for the vote confirmation service.

This package contains common code used across the service:
- Data models (VoteSubmission, VoteRecord, PublicVote, Stats, enums)
- Public projection of a record
- Validation functions and consent constants
"""

from .models import (
    VoteSubmission,
    VoteRecord,
    PublicVote,
    CountryCount,
    Stats,
    SubmissionStatus,
    VoteEvent,
    project_public,
    normalize_email,
    normalize_country_code,
    validate_email_format,
    validate_country_code,
    PRIVACY_POLICY_FIELD,
    AGE_ATTESTATION_FIELD,
    CONSENT_ACCEPTED,
)

__all__ = [
    'VoteSubmission',
    'VoteRecord',
    'PublicVote',
    'CountryCount',
    'Stats',
    'SubmissionStatus',
    'VoteEvent',
    'project_public',
    'normalize_email',
    'normalize_country_code',
    'validate_email_format',
    'validate_country_code',
    'PRIVACY_POLICY_FIELD',
    'AGE_ATTESTATION_FIELD',
    'CONSENT_ACCEPTED',
]

__version__ = '1.0.0'

"""Controlled disclosure of PII: masking, the server reveal operation, and the masked-field view.

Public API:
  - mask_email(), mask_phone()   — server-side display masking
  - RevealService                — authorize, rate limit, audit, disclose
  - RevealRateCounter            — per-user rolling quota (limits moving window)
  - MaskedField, RevealGrant     — client view with auto-hide and clipboard guard
  - HttpRevealClient, LocalRevealClient
  - RevealError and subclasses
"""

from crmguard.disclosure.client import HttpRevealClient, LocalRevealClient, RevealClient
from crmguard.disclosure.errors import (
    AccessDeniedError,
    AlertDispatchError,
    AuthenticationRequiredError,
    InvalidFieldError,
    LeadNotFoundError,
    RateLimitExceededError,
    RevealError,
    RevealFailedError,
)
from crmguard.disclosure.gateway import MaskedField, RevealGrant, RevealOutcome
from crmguard.disclosure.leads import InMemoryLeadStore, Lead, LeadStore, SupabaseLeadStore
from crmguard.disclosure.masking import mask_email, mask_phone
from crmguard.disclosure.rate_limit import RateDecision, RevealRateCounter
from crmguard.disclosure.service import RevealResult, RevealService

__all__ = [
    "AccessDeniedError",
    "AlertDispatchError",
    "AuthenticationRequiredError",
    "HttpRevealClient",
    "InMemoryLeadStore",
    "InvalidFieldError",
    "Lead",
    "LeadNotFoundError",
    "LeadStore",
    "LocalRevealClient",
    "MaskedField",
    "RateDecision",
    "RateLimitExceededError",
    "RevealClient",
    "RevealError",
    "RevealFailedError",
    "RevealGrant",
    "RevealOutcome",
    "RevealRateCounter",
    "RevealResult",
    "RevealService",
    "SupabaseLeadStore",
    "mask_email",
    "mask_phone",
]

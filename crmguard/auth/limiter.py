"""Shared request limiter for the crmguard HTTP surface.

Uses slowapi (Starlette-compatible rate limiting) as a coarse per-client cap
on request volume. This is NOT the reveal quota: the authoritative
"N reveals per rolling window" counter lives in
crmguard/disclosure/rate_limit.py and is keyed by identity, not address.

The reveal cap comes from ``reveal.http_rate_limit`` in the config. The
lifespan installs it with ``set_reveal_request_limit()``; the route decorator
holds the ``reveal_request_limit`` callable, which slowapi evaluates on every
request.

The Limiter instance is created here and shared between:
  - crmguard/disclosure/router.py  (route decorators)
  - crmguard/monitoring/router.py  (route decorators)
  - crmguard/main.py               (app.state.limiter + SlowAPIMiddleware registration)
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from crmguard.constants import REVEAL_HTTP_RATE_LIMIT

# Module-level limiter, imported by main.py and the routers
limiter = Limiter(key_func=get_remote_address)

# Per-address cap on admin monitoring endpoints
ADMIN_REQUEST_RATE_LIMIT = "120/minute"

_reveal_request_limit: str = REVEAL_HTTP_RATE_LIMIT


def set_reveal_request_limit(limit: str) -> None:
    """Install the per-address reveal cap (e.g. "30/minute")."""
    global _reveal_request_limit
    _reveal_request_limit = limit


def reveal_request_limit() -> str:
    """Per-address cap on reveal requests."""
    return _reveal_request_limit

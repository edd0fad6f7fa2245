"""Shared constants for crmguard.

All thresholds, delays and window sizes used across modules are defined here
and serve as the defaults for config.py. No magic numbers in other modules.
"""

# ─── Violation ledger ─────────────────────────────────────────────────────────

# Hostile signals that end the session. threshold-1 is the "final warning".
MAX_VIOLATIONS_BEFORE_LOGOUT: int = 5

# Quiet period after the last hostile signal before the count returns to 0.
VIOLATION_RESET_MINUTES: float = 30.0

# Delay between showing the termination overlay and calling sign-out.
SIGN_OUT_DELAY_SECONDS: float = 2.0

# ─── Signal detectors ─────────────────────────────────────────────────────────

# Minimum gap between two accepted screenshot signals (key-repeat collapse).
SCREENSHOT_DEBOUNCE_MS: int = 500

# Focus/visibility loss must persist this long before it becomes a signal.
FOCUS_GRACE_MS: int = 500

# Outer/inner window delta that suggests a docked inspector panel.
DEVTOOLS_THRESHOLD_PX: int = 160

# Inspector-docking heuristic poll period.
DEVTOOLS_POLL_SECONDS: float = 1.0

# ─── Disclosure gateway ───────────────────────────────────────────────────────

# Successful reveals allowed per user per rolling window.
MAX_REVEALS_PER_WINDOW: int = 20

# Rolling window for the reveal rate counter (one hour).
REVEAL_WINDOW_SECONDS: int = 3600

# Lifetime of a RevealGrant before the field re-masks itself.
AUTO_HIDE_SECONDS: int = 60

# Per-route HTTP request cap (slowapi) on the reveal endpoint.
REVEAL_HTTP_RATE_LIMIT: str = "60/minute"

# Field kinds the reveal operation accepts.
REVEALABLE_FIELDS: frozenset[str] = frozenset({"email", "phone"})

# Audit action prefix written for every successful reveal.
REVEAL_ACTION_PREFIX: str = "revealed_"

# ─── Suspicious-activity aggregator ───────────────────────────────────────────

# Rolling lookback. Deliberately short; tune upward for production traffic.
SUSPICIOUS_WINDOW_MINUTES: float = 2.0

# Reveals inside the window that flag a user.
SUSPICIOUS_THRESHOLD: int = 3

# Fallback refresh period when the push feed is quiet or disconnected.
AGGREGATOR_POLL_SECONDS: float = 30.0

# Newest audit rows considered by one aggregation pass.
AGGREGATOR_FETCH_LIMIT: int = 200

# Automatic alert attempts per incident before giving up.
ALERT_MAX_ATTEMPTS: int = 3

# Base delay for exponential alert retry backoff.
ALERT_BACKOFF_SECONDS: float = 30.0

# Recent actions listed in an alert e-mail.
ALERT_MAX_LISTED_ACTIONS: int = 10

# ─── Boundary timeouts ────────────────────────────────────────────────────────

# Every Supabase call is wrapped in asyncio.wait_for(timeout=...).
SUPABASE_TIMEOUT_S: float = 5.0

# Outbound e-mail API timeout.
ALERT_HTTP_TIMEOUT_S: float = 10.0

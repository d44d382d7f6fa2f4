"""
Global configuration for the fund utilization engine.

Set BASE_PATH to the subpath where the API is served behind a reverse proxy
(e.g., '/fund-utilization'). Leave it as an empty string for root deployment.

This module centralizes configuration instead of relying solely on env vars.
The database path is still taken from FUND_DB_PATH when set (see
ledger.store._default_db_path).
"""

BASE_PATH = ""

# Forecast model
# Days between modeled billable sessions (biweekly by default).
DEFAULT_SESSION_CADENCE_DAYS = 14
# Share of scheduled sessions assumed missed when no billed-session count is known.
DEFAULT_MISS_RATE = 0.0
# Point granularity for the timeline: "cadence" or "monthly".
DEFAULT_FORECAST_TICK = "cadence"

# Depletion status thresholds on (percent spent / percent of time elapsed)
DEPLETING_FAST_RATIO = 1.1
DEPLETING_SLOW_RATIO = 0.85

# Statuses treated as completed for both sessions and session notes
COMPLETED_STATUS = "completed"

# Currency settings
CURRENCY_SYMBOL = "$"

# Advisory plan locks older than this are treated as abandoned and taken over
PLAN_LOCK_TTL_SECONDS = 15 * 60

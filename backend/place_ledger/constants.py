"""
Business constants for the place ledger.

These values are stable across environments and do not need env-var
overrides. Quota sizes and the purchase catalog live in config.py so tests
can substitute them.
"""

# --- Subscription statuses that unlock unlimited registrations ---
PREMIUM_STATUSES: frozenset[str] = frozenset({"active", "trialing"})

# --- Metadata marker on Stripe objects created for credit packs ---
ONE_TIME_PURCHASE_KIND = "one_time_purchase"

# --- Source labels shown next to each quota bar ---
FREE_SOURCE_LABEL = "Free allowance"
SUBSCRIPTION_SOURCE_LABEL = "Premium subscription"

# --- API metadata ---
API_TITLE = "Place Ledger API"
API_VERSION = "0.1.0"

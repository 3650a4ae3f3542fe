"""Centralized application constants — single source of truth for hardcoded values."""

# --- Session ---
COOKIE_NAME = "paygate_session"

# --- Subscriptions ---
TRIAL_DAYS = 14
CHECKOUT_ACCESS_DAYS = 30
PAYMENT_RETRY_GRACE_DAYS = 7
SUBSCRIPTION_LIST_LIMIT = 10
CHECKOUT_LIST_LIMIT = 10
STALE_RECONCILE_BATCH = 50

# --- Stripe ---
PAID_CHECKOUT_STATUSES = {"paid", "no_payment_required"}

# --- Webhook outbox ---
WEBHOOK_EVENT_RETENTION_DAYS = 30
WEBHOOK_MAX_ATTEMPTS = 8
WEBHOOK_RETRY_BASE_SECONDS = 5

# --- Discount offers ---
OFFER_TTL_HOURS = 48
OFFER_MIN_PRICE_CENTS = 2000  # $20
OFFER_MIN_DISCOUNT_PERCENT = 5.0
OFFER_MAX_DISCOUNT_PERCENT = 10.0

# --- Admin ---
ADMIN_GRANT_MAX_DAYS = 365
ADMIN_REASON_MAX_LENGTH = 500

# --- Timer ---
TIMER_SINGLETON_ID = 1
TIMER_DEFAULT_HOURS = 72
TIMER_DEFAULT_MESSAGE = "Lock in current pricing before increase"
TIMER_DEFAULT_PRICE_MESSAGE = "Next price increase: $199/month"
TIMER_MAX_HOURS = 168  # 1 week
TIMER_MESSAGE_MAX_LENGTH = 200
TIMER_PRICE_MESSAGE_MAX_LENGTH = 100

# --- Worker ---
ARQ_MAX_JOBS = 10
ARQ_JOB_TIMEOUT = 120  # seconds

# --- Catalog ---
PLAN_NAME_TTL_SECONDS = 3600
PLAN_NAME_CACHE_SIZE = 256

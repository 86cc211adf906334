"""Centralized billing constants: single source of truth for hardcoded values."""

# --- Session ---
COOKIE_NAME = "billing_session"

# --- Roles ---
ROLE_USER = "user"
ROLE_COMPANY_ADMIN = "company_admin"
ROLE_SUPER_ADMIN = "super_admin"
ADMIN_ROLES = frozenset({ROLE_SUPER_ADMIN, ROLE_COMPANY_ADMIN})
PAYMENT_APPROVER_ROLES = frozenset({ROLE_SUPER_ADMIN})

# --- Billing cycles ---
BILLING_CYCLES = ("monthly", "yearly")

# --- Payment methods ---
PAYMENT_METHOD_CARD = "card"
PAYMENT_METHOD_MANUAL = "manual"
MANUAL_PAYMENT_METHODS = ("jazzcash", "easypaisa", "bank_transfer", "none")
SIMULATED_CARD_METHOD = "card"

# --- Coupons ---
DISCOUNT_PERCENTAGE = "percentage"
DISCOUNT_FIXED = "fixed"

# --- Notifications ---
NOTIFY_PAYMENT_SUCCESS = "payment_success"
NOTIFY_PAYMENT_FAILED = "payment_failed"
NOTIFY_PAYMENT_PENDING = "payment_pending"
NOTIFY_SUBSCRIPTION_EXPIRING = "subscription_expiring"
NOTIFY_SUBSCRIPTION_CANCELLED = "subscription_cancelled"
NOTIFY_PLAN_CHANGED = "plan_changed"
NOTIFICATION_TYPES = (
    NOTIFY_PAYMENT_SUCCESS,
    NOTIFY_PAYMENT_FAILED,
    NOTIFY_PAYMENT_PENDING,
    NOTIFY_SUBSCRIPTION_EXPIRING,
    NOTIFY_SUBSCRIPTION_CANCELLED,
    NOTIFY_PLAN_CHANGED,
)

# --- Listing ---
LIST_LIMIT = 50

# --- Analytics ---
ANALYTICS_MONTHS = 6
MONTH_NAMES = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")

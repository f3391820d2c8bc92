"""
Business logic constants for the entitlement engine.

These values are stable across environments and do not need env-var
overrides. For policy knobs that may vary per deployment (grace period, trial
length, admin allowlist), see config.py.
"""

API_TITLE = "Meus Editais Entitlements API"
API_VERSION = "0.1.0"

# --- Checkout metadata keys (written at checkout, read back by the webhook) ---
METADATA_USER_ID = "user_id"
METADATA_PLAN_ID = "plan_id"
METADATA_DOCUMENT_ID = "document_id"
METADATA_ROLE_ID = "role_id"

# --- Stripe event types the reconciler acts on ---
EVENT_CHECKOUT_COMPLETED = "checkout.session.completed"
EVENT_CHECKOUT_ASYNC_PAYMENT_SUCCEEDED = "checkout.session.async_payment_succeeded"
EVENT_SUBSCRIPTION_UPDATED = "customer.subscription.updated"
EVENT_SUBSCRIPTION_DELETED = "customer.subscription.deleted"
EVENT_INVOICE_PAYMENT_FAILED = "invoice.payment_failed"

# Stripe subscription statuses that mean the customer is behind on payment
DELINQUENT_SUBSCRIPTION_STATUSES = {"past_due", "unpaid"}

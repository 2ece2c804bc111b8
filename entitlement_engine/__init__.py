"""
Subscription lifecycle reconciler and entitlement resolver.

Billing webhooks are verified (billing.verifier), applied to account state
(billing.reconciler) and turned into entitlement snapshots
(entitlements.calculator) served through a versioned cache
(entitlements.cache).
"""

__version__ = "0.1.0"

"""
Billing event handling.

This package provides:
- EventVerifier: signature verification across sandbox/production trust domains
- TierResolver: price identifier -> tier name, scoped per trust domain
- StateReconciler: applies verified events to account state with conditional writes
- apply_status_override: administrative status changes
"""

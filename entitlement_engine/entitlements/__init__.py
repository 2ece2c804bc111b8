"""
Entitlement derivation.

- TierCatalogLoader: loads config/tiers.json
- compute: pure (account, catalog, now) -> EntitlementSnapshot
- SnapshotCache: versioned, TTL-bound snapshot cache (Redis or in-memory)
- EntitlementService: cache-first reads, restrictive on failure
"""

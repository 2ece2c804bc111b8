"""HTTP API for webhooks, entitlement reads and administration."""

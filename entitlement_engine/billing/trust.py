"""Trust domains for inbound billing events."""

import enum


class TrustDomain(str, enum.Enum):
    """Independent signing-secret scopes. Identifiers never cross domains."""
    SANDBOX = "sandbox"
    PRODUCTION = "production"

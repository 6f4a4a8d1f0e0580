"""Rate limiting for the REST control endpoints.

The provider webhook is never rate limited: dropping deliveries would
trigger provider-side retry storms.
"""

from __future__ import annotations

from slowapi import Limiter
from slowapi.util import get_remote_address


# Shared across the application
limiter = Limiter(key_func=get_remote_address)


class RateLimits:
    """Rate limit constants for different endpoint types."""

    # Standard read operations
    READ = "60/minute"

    # Control operations (start/stop, enqueue, DNC changes)
    WRITE = "30/minute"

    # Compliance previews hit the DNC registry
    SENSITIVE = "10/minute"

    # Health checks (allow frequent polling)
    HEALTH = "300/minute"

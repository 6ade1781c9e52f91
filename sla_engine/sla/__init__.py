"""
SLA Tracking Module
===================

Bounded Context for per-tenant service level agreements.

Responsibilities:
- Administer SLA definitions, matching rules and status timeout policies
- Resolve which SLA applies to a ticket
- Compute pause-aware response and resolution clocks
- Raise and acknowledge escalations from a periodic sweep
- Maintain per-ticket compliance metrics and tenant-wide statistics
"""

__version__ = "1.0.0"

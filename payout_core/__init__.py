"""
payout-core: money movement core for a multi-tenant creator payout platform.

Trust scoring, charge routing, the charge lifecycle, refund automation,
dispute tracking and settlement reconciliation.
"""

__version__ = "0.1.0"

"""
Membership entitlement, subscription reconciliation and physical access control.
"""

__version__ = "1.0.0"

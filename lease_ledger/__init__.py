"""
Lease & Ledger Engine

Contract lifecycle, rent charge generation, payment allocation, aging and
collections for a property-rental portal. All monetary values use Decimal.
"""

__version__ = "1.0.0"

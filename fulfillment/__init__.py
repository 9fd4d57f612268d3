"""
                Restaurant Fulfillment Engine

Order lifecycle, tax-aware billing reconciliation, kitchen ticket
print tracking and lifecycle event fan-out for a multi-vendor
restaurant ordering platform (dine-in, delivery, pickup).

Version: 1.0.0
License: MIT
"""

__version__ = "1.0.0"

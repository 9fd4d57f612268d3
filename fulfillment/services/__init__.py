"""
                        Services Module

Business logic of the fulfillment engine. Transport-backed services follow
the same pattern: an abstract base with an in-process implementation for
development and a networked one for production.

Services:
    - pricing: line item canonicalization
    - invoice: bill aggregation and discounts
    - lifecycle: channel status flows
    - kitchen: kitchen tickets and partial print tracking
    - events: lifecycle event fan-out (memory / Redis)
    - orders: the order operation surface
    - excel_manager: process-safe Excel sales ledger
"""

from fulfillment.services.excel_manager import ExcelManager

__all__ = ["ExcelManager"]

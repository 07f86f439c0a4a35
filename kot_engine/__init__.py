"""
                KOT Reconciliation Engine

Order lifecycle and billing reconciliation for a restaurant
point-of-sale: bill math, the order status machine, per-view
polling against the backend, and an offline mutation queue.

Version: 1.0.0
License: MIT
"""

__version__ = "1.0.0"

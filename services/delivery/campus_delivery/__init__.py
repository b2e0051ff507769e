"""
Campus Delivery — order lifecycle and inventory ledger service.
"""

__version__ = "0.1.0"

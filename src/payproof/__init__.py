"""
Payproof payment-proof intake package.

The package turns photographed bank and e-wallet receipts into pre-filled payment
fields and submits conference registrations exactly once per contact.
"""

__all__ = ["__version__"]

__version__ = "0.1.0"

"""HTTP surface for Payproof."""

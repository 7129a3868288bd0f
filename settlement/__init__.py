"""
Escrow settlement engine.

Custodial per-order wallets, balance probing, fee split, transfer execution
and at-most-once release scheduling.
"""

__version__ = "0.4.0"

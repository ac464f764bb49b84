"""Atelier settlement engine: order lifecycle, USDC settlement and content fulfillment."""

__version__ = "0.1.0"

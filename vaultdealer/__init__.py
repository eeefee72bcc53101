"""Vault Dealer: autonomous execution engine for scheduled tasks and AI dealer cycles."""

__version__ = "0.3.0"

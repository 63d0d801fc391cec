"""Proof-of-possession request authentication and signed passkey challenges."""

__version__ = "0.1.0"

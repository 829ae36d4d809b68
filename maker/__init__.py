"""Maker - resumable task ledger for decompose-and-vote code generation."""

# No imports at package level to avoid circular import issues
# Import modules directly where needed

__version__ = "0.1.0"

"""pal - AI agent harness CLI with ledger-distributed self-updates."""

__version__ = "0.1.0"

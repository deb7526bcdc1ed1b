"""NAV-peg arbitrage engine: fixed-point sizing, correction driver, balance ledger."""

__version__ = "0.1.0"

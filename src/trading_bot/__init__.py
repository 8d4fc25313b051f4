"""Trading bot core: entry/exit decisions, risk gating and error recovery."""

__version__ = "1.0.0"

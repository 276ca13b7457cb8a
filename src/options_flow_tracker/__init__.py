"""Options Flow Tracker - Block-trade flow analytics for listed BTC options."""

__version__ = "0.1.0"

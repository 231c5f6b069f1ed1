"""On-chain prediction-market round indexer: backfill crawler + realtime bet listener."""

__version__ = "1.0.0"

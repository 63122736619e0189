"""polycopy - Polymarket copy-trading order pipeline."""

__version__ = "0.1.0"

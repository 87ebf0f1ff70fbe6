"""Key/value store, configuration, wallet database, closed-channel lists and encrypted ratchet sessions for a Lightning wallet node."""

__version__ = "0.1.0"
"""Relay Delta Exchange market data to websocket clients, with subscriptions and statistics."""

__version__ = "0.1.0"
__all__ = ["__version__"]
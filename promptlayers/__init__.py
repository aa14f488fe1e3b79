"""Layered prompt-context assembly for multi-turn chat"""

__version__ = "0.1.0"

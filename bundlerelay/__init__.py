"""Asyncio packet and bundle relay hub with blacklist filtering, front-run detection and DEX instruction decoding."""

__version__ = "0.1.0"
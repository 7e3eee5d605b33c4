"""Bonfire - keeps announcement records, a Discord channel and a roam roster in sync."""

__version__ = "0.1.0"

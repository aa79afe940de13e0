"""Stalker middleware gateway: HLS re-streaming and portal API impersonation."""

__version__ = "0.9.0"

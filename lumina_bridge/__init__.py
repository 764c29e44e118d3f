"""Outbound-only bridge between a remote command queue and a local WLED device."""

__version__ = "0.3.0"

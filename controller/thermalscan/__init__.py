"""Thermal scan kiosk controller."""

__version__ = "0.1.0"

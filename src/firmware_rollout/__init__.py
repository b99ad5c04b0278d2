"""Firmware gap analysis and rolling update orchestration."""

__version__ = "0.1.0"

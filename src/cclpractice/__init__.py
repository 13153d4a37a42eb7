"""Dialogue practice client for NAATI CCL preparation."""

__version__ = "0.1.0"

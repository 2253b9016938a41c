"""Flowpilot: drives a coding agent through a fixed delivery pipeline."""

__version__ = "0.3.0"

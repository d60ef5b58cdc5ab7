"""Tool-calling agent runtime for the Micromanager assistant."""

__version__ = "0.1.0"

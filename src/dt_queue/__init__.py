"""Task queue engine and CLI for batch DEVONthink automation."""

__version__ = "0.3.0"

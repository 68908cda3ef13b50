"""phi: a terminal coding agent with streaming output and local tools."""

__version__ = "0.3.0"

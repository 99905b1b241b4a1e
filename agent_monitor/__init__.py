"""agent-monitor: live session state for concurrently running coding agents."""

__version__ = "0.1.0"

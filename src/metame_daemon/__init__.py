"""MetaMe heartbeat daemon: chat bridge, scheduled tasks and budget tracking."""

__version__ = "0.3.0"

__all__ = ["__version__"]

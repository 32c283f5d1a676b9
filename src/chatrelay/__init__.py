"""chatrelay: streaming chat relay for a local inference server."""

__version__ = "0.1.0"

"""TCP file-drop server and client with group-based directory access."""

__version__ = "0.1.0"
__all__ = ["protocol", "server", "client"]
"""Dataclass row scanning and file-based schema migrations for CQL databases."""

__version__ = "0.1.0"
__all__ = ["camelize", "iterx", "mapper", "migrate"]
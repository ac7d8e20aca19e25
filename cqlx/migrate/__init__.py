"""Apply CQL migration files from a flat directory, in file-name order."""

__all__ = ["callback", "checksum", "migrate"]
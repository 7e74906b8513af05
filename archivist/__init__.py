"""Archivist: tool-augmented conversational agent core."""

__version__ = "0.1.0"

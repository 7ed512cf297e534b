"""FixRez resume optimization backend."""

__version__ = "1.0.0"

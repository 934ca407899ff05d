"""Asynchronous vision analysis pipeline for screen captures."""

__version__ = "1.0.0"

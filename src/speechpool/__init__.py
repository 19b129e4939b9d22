"""Managed Gemini API-key pool and chunked speech synthesis service."""

__version__ = "0.1.0"

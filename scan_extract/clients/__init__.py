"""Clients for the external extraction provider."""

from .gemini_client import ExtractionClient, GeminiClient

__all__ = ["ExtractionClient", "GeminiClient"]

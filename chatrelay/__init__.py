"""Streaming chat orchestrator with resumable streams and product retrieval."""

__version__ = "0.1.0"

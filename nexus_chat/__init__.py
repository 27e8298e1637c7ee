"""Streaming chat session core for hosted text-completion models."""

__version__ = "0.1.0"

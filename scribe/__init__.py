"""Chunked media transcription pipeline."""

__version__ = "1.0.0"

"""Resumable upload and credit-gated background analysis pipeline."""

__version__ = "0.1.0"

"""Resumable batch analysis pipeline: export, stage, submit, import."""

__version__ = "0.1.0"

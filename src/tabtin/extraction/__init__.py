"""Prompt construction and model-reply normalization into extraction rows."""

"""Inference provider adapters."""

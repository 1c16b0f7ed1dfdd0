"""Concurrency-limited executor over the persistent ``batch_jobs`` table."""

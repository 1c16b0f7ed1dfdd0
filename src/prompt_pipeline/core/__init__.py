"""Orchestration core: stage engine, pipeline runner and durable job lifecycle.

Jobs live in plain directories (``pending`` -> ``current`` -> ``complete`` or
``rejected``) and every state change is persisted to JSON files inside the job
working directory. There is no broker and no in-memory registry of in-flight
jobs: the filesystem is the only source of truth, so any process can rebuild
its view after a crash by scanning the four locations.
"""

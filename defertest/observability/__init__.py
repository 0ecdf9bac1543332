"""Observability helpers: structlog setup, the Prometheus registry and scrape middleware.

Metrics live in an explicitly constructed registry that is handed to the workers
and to the HTTP app, so tests can build their own.
"""

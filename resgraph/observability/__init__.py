"""Observability for resgraph: structured logging and Prometheus metrics."""

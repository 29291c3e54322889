"""Rate limiting adapters.

This package provides a small abstraction layer so the service can start with
an in-memory limiter and later migrate to Redis or another shared store without
changing the API layer. The counting strategy (fixed window or sliding log) is
selected by name through ``create_rate_limiter``.
"""

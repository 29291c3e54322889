"""Key table storage adapters.

The services depend on ``AbstractKeyStore`` so the file-backed store can be
replaced (e.g. by SQLite) without touching the lifecycle logic.
"""

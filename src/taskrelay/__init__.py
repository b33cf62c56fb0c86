"""taskrelay - SQLite-backed job scheduler with transactional change events."""

__version__ = "0.1.0"

"""PostgreSQL-backed product store and mapping cache."""

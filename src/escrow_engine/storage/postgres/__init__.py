"""PostgreSQL persistence (SQLAlchemy async + asyncpg)."""

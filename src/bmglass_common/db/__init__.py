"""Database helpers (asyncpg pool, repositories base, migrations)."""

"""Store interfaces and implementations (PostgreSQL, Redis, in-memory)."""

"""Embedding-seeded discovery expansion for complex queries."""

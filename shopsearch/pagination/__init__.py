"""Stateless pagination via signed continuation tokens."""

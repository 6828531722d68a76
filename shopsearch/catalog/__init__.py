"""Catalog-facing types.

Primary components:
- ``base``: ``DocumentSummary`` and the lexical/vector/embedding provider ABCs.
- ``filters``: hard filters, soft categories, and extraction normalization.
- ``memory``: in-memory catalog implementing both search providers.
"""

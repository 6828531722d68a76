"""Relevance ranking and result delivery core for e-commerce product search.

Subpackages:
- ``shopsearch.common``: configuration, logging, metrics, and errors.
- ``shopsearch.catalog``: document view, filter model, and provider contracts.
- ``shopsearch.ranking``: rank fusion, exact-match bonus, and tiering.
- ``shopsearch.adapters``: circuit breakers and AI fallbacks.
- ``shopsearch.intelligence``: governed query understanding and embeddings.
- ``shopsearch.pagination``: continuation token codec.
- ``shopsearch.hybrid``: batch delivery across fresh searches.
- ``shopsearch.discovery``: embedding-seeded discovery expansion.
"""

__version__ = "0.1.0"

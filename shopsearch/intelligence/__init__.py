"""Query understanding and embedding clients."""

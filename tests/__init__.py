"""Tests for the shopsearch ranking core.

External collaborators (search providers, AI services, the embedding
service, the clock) are replaced by the fakes in ``tests.fakes`` so every
test runs offline.
"""

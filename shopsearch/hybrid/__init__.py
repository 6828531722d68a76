"""Hybrid search components for lexical + vector ranking.

Includes the ``BatchDeliveryCoordinator`` which runs fresh searches per
batch, fuses and tiers them, and hands out continuation tokens.
"""

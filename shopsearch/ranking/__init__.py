"""Search ranking and result fusion components.

Contents
- ``fusion``: weighted RRF plus exact-match bonus
- ``tiering``: confidence tiers and soft-category ordering
- ``similarity``: edit distance and string similarity
"""

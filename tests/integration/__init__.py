"""Integration tests for the awards voting core.

Covers the PostgreSQL store constraints, the voting flow on top of them and
LISTEN/NOTIFY driven live views. All tests require a reachable PostgreSQL.
"""

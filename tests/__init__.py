"""
Test suite for tenantdb.

Unit tests run against mocked asyncpg connections and an in-memory
PostgreSQL stand-in defined in conftest.py.
"""

"""Integration tests against real PostgreSQL and Redis.

These run only when the services are reachable; otherwise every test skips.
Connection settings come from the same POSTGRES_* and REDIS_* environment
variables the services read.
"""

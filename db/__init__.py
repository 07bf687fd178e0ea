"""db/ -- Resilient data-access layer for authkeep.

Connection pooling, retry with backoff and transaction orchestration on top
of SQLAlchemy. Stores in auth/ run every statement through DataAccess; they
never create engines or connections of their own.

Layer rule: db/ imports only stdlib, third-party libraries and core/.
It does NOT import from auth/ or api/.
"""

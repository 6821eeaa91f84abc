"""
Feature modules live under this package.

Each module owns its routes/templates/models while reusing platform
primitives (auth, RBAC, audit, storage, DB session).
"""

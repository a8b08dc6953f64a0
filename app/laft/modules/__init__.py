"""
Feature modules live under this package.

Each module owns its models, service layer and routes (admin.py), and reuses
the platform primitives: auth, RBAC, audit, storage and the DB session.
"""

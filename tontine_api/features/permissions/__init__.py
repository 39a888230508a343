"""
Permission management feature module.

Implements association-scoped dynamic RBAC: a permission catalog per
association, named roles, per-member overrides and the resolver that
combines them.
"""

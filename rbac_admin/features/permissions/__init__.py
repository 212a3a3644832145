"""
Role and permission administration feature module.

Holds the role registry, the per-role permission store and the
scope/permission value types shared with the staging engine.
"""

"""
Resource/action catalog feature module.

Read-only reference data consumed by the role registry, permission
store and staging engine.
"""

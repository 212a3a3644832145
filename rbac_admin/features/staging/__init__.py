"""
Staged permission editing: toggle many role/permission cells, then apply
them to the system of record as one reconciled batch.
"""

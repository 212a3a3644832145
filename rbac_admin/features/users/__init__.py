"""User-role assignment."""

"""Execution identities and cluster access bindings."""

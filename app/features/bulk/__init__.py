"""
Bulk grant, revoke and clone operations.
"""

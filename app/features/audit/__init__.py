"""
Append-only audit trail of grant lifecycle transitions.
"""

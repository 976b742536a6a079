"""
Expiration sweep of time-limited grants.
"""

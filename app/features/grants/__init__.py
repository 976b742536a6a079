"""
Direct grant feature module.

Grant store, effective permission resolution and the risk gate for
step-up and approval-gated permissions.
"""

"""
Permission catalog feature module.

Permission definitions with their tree position, dependency and conflict
edges, role defaults and risk requirements.
"""

"""auth/ -- Identity flows: token service, identity store, authorization registry,
permission evaluator and the AuthService orchestrator.

Layer rule: auth/ imports from core/, never the other way around.
"""

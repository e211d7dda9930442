"""core/ -- Kernel of the identity provider: config, errors, domain models, tax IDs.

Layer rule: core/ imports only stdlib + third-party libraries.
It does NOT import from auth/. auth/ imports from core/, not the other way around.
"""

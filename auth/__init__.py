"""auth/ -- Credential and session lifecycle core for Gatehouse.

Layer rule: auth/ imports stdlib, third-party libraries and core/ (config).
It does NOT import from api/. api/ imports from auth/, not the other way around.
"""

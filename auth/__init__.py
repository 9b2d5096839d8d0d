"""auth/ -- Server-side authentication and authorization package for StagePass.

Layer rule: auth/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/ or client/.
api/ and client/ import from auth/, not the other way around.
"""

"""auth/ -- Authentication, session and authorization engine for TenantGate.

Layer rule: auth/ imports stdlib, third-party libraries and core/ only.
It does NOT import from api/. api/ and main.py import from auth/, not the
other way around. auth/dependencies.py is the one module that knows about
FastAPI request objects.
"""

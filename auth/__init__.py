"""auth/ -- Authentication, session, authorization and audit core for authcore.

Public entry point: auth.facade.AuthFacade (built with build_auth_facade()).
The component modules (credentials, otp, sessions, permissions, audit) are
importable for provisioning scripts and tests.

Layer rule: auth/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/. api/ and main.py import from auth/, not the
other way around. auth/dependencies.py is the one module allowed to import
fastapi, because it is part of the FastAPI dependency injection system.
"""

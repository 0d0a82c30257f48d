"""auth/ -- The Credential & Session Authority.

Credential store, login authenticator, token issuer, session guard and
security audit log. Authority (auth/authority.py) owns them all.

Layer rule: auth/ imports only stdlib, third-party libraries and core/config.
It does NOT import from api/. api/ imports from auth/, not the other way around.
auth/dependencies.py is the only module that imports fastapi.
"""

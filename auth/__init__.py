"""auth/ -- Account security package for TaskGuard.

Credential store, password policy, MFA engine, login state machine and the
session/authorization guards.

Layer rule: auth/ imports stdlib, third-party libraries and core.config only.
It does NOT import from api/. api/ imports from auth/, not the other way around.
"""

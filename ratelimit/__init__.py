"""ratelimit/ -- Request throttling for ClinicConnect auth.

Layer rule: ratelimit/ imports from core/ only. It does NOT import from api/
or auth/. api/main.py wires the limiter into an HTTP middleware.
"""

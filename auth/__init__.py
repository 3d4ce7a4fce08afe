"""auth/ -- Authentication and authorization package for ClinicConnect.

Layer rule: auth/ imports from core/ plus stdlib and third-party libraries.
It does NOT import from api/ or ratelimit/.
api/ imports from auth/, not the other way around.
"""

"""auth/ -- Authentication and authorization guard layer for authguard.

Layer rule: auth/ imports only core/, stdlib and third-party libraries.
It does NOT import from api/. api/ imports from auth/, not the other way
around. auth/dependencies.py is the one module here that knows about
FastAPI/Starlette request and response objects.
"""

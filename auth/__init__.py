"""auth/ -- Authentication and second-factor package for the portfolio API.

Layer rule: auth/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/. api/ and main.py import from auth/, not the
other way around. auth/dependencies.py is the one FastAPI-aware module.
"""

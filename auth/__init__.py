"""auth/ -- Authentication core for authcore.

Layer rule: auth/ imports only stdlib + third-party libraries.
It does NOT import from api/ or core/. Components receive their
configuration as frozen values in their constructors; api/ and main.py
import from auth/, not the other way around.
"""

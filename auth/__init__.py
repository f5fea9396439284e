"""auth/ -- Session rotation package for chatgate.

Layer rule: auth/ imports only stdlib + third-party libraries + core/.
It does NOT import from api/ or presence/.
api/ imports from auth/, not the other way around.
"""

"""auth/ -- Identity package for the VAPT portal: accounts, roles, sessions.

Layer rule: auth/ imports only stdlib + third-party libraries + core/.
It does NOT import from api/ or portal/.
api/ and portal/ import from auth/, not the other way around.
"""

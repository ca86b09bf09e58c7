"""auth/ -- Authentication and authorization package for AdminGate.

Layer rule: auth/ imports stdlib, third-party libraries, core/ (settings) and
audit/ (the sink it reports decisions to). It does NOT import from api/.
api/ imports from auth/, not the other way around.
"""

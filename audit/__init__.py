"""audit/ -- Accountability trail for AdminGate.

Layer rule: audit/ imports only stdlib + third-party libraries and auth.models
(for RequestOrigin). It does NOT import from api/.
api/ and auth/ hand records to audit/, not the other way around.
"""

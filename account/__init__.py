"""account/ -- Session and credential lifecycle engine for accountd.

Layer rule: account/ imports only stdlib + third-party libraries + core/.
It does NOT import from api/. api/ imports from account/, not the other way
around. The single exception is account/dependencies.py, which speaks
FastAPI's Depends() protocol so routes can declare the access gate.
"""

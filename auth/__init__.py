"""auth/ -- Authentication and session lifecycle for the Minimarket back-office.

Access tokens (tokens.py), rotating refresh credentials (sessions.py),
verification passcodes (passcodes.py) and the account security policy
(policy.py), wired together by the AuthService facade (service.py).

Layer rule: auth/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/ or client/.
api/ imports from auth/, not the other way around.
"""

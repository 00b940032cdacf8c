"""auth/ -- Authentication, session and account-security package for AuthGate.

Layer rule: auth/ imports from core/ plus third-party libraries.
It does NOT import from api/, cache/, or mail/; the cache store and email
notifier are injected into AuthService and LockoutEngine by api/wiring.py.
"""

"""cache/ -- Session and counter storage (in-process or Redis).

Layer rule: cache/ imports only from core/.
"""

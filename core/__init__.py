"""core/ -- Kernel: configuration, clock helpers and the error taxonomy.

Layer rule: core/ imports nothing from the other AuthGate packages.
"""

"""mail/ -- Outbound transactional email for AuthGate.

Layer rule: mail/ imports only stdlib + core/. auth/ receives an EmailService
instance by injection and never imports this package.
"""

"""
Security package: sessions, login activity, threat detection, validation.

Modules are async-first, log through structlog, and keep shared state
(sessions, rate limiting) in Redis.
"""

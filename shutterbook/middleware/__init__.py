# Middleware package init
"""
Shutterbook Notifications — Middleware Package
================================================

Middleware Chain:
    Request → [Rate Limit] → [Request ID] → [Logging] → [CORS] → Route Handler

No compression middleware is installed: it would buffer the event stream
and hold heartbeats back from the client.
"""

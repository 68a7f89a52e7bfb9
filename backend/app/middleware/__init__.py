# Middleware package init
"""
Keystone Backend — Middleware Package
=====================================

What:  Cross-cutting concerns applied to every request.

Middleware chain (outermost first):
    Request → [Security headers] → [Request ID] → [Logging] → [Rate-limit headers] → [GZip] → [CORS] → Route

    1. Security headers wrap everything, error responses included
    2. Request ID is assigned before anything logs
    3. Logging sees the final status and duration
    4. Rate-limit headers copy the limiter's result (request.state) onto the response

Rate limiting itself runs as route dependencies (app.middleware.rate_limit) so
limits can key on the authenticated user. Exception handlers live in
app.middleware.error_handler.
"""

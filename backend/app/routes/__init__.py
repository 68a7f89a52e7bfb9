# Routes package init
"""
Keystone Backend — API Routes Package
=====================================

Route inventory:
    - health.py:    GET /health, GET /metrics, GET /api
    - examples.py:  /api/examples (CRUD, publish/archive, stats, admin)
    - payments.py:  POST /api/payments/checkout, POST /api/payments/portal
    - uploads.py:   POST /api/uploads/presign, POST /api/uploads/complete
    - webhooks.py:  POST /api/webhooks/identity, POST /api/webhooks/stripe
    - realtime.py:  WS /ws

Routes stay thin: parse the request, resolve the caller, call a service,
wrap the result in the response envelope.
"""

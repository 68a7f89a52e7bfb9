# Services package init
"""
Keystone Backend — Services Layer
=================================

What:  Business logic between routes (HTTP) and repositories (persistence).

Service inventory:
    - ExampleService: Example lifecycle, ownership and visibility rules
    - UserService: local accounts mirrored from the identity provider
    - AuditService: append-only audit trail and retention cleanup
    - TokenVerifier: bearer token verification
    - IdentityEvents: identity provider webhooks
    - PaymentService / SubscriptionEvents: Stripe checkout, portal and webhooks
    - StorageService: S3 presigned uploads
    - EmailService: SendGrid delivery
    - RealtimeHub: WebSocket rooms with Redis fan-out
"""

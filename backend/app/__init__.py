"""
Keystone Backend — Application Package
======================================

What: SaaS backend scaffold built around one user-owned resource ("Example")
      plus optional feature modules (auth, payments, uploads, email, jobs, realtime).

Architecture Note:
    ┌─────────────────────────────────────┐
    │           Routes (API Layer)        │  ← HTTP concerns, response envelopes
    ├─────────────────────────────────────┤
    │         Services (Business Logic)   │  ← ownership, uniqueness, audit
    ├─────────────────────────────────────┤
    │   Repositories, Models & Schemas    │  ← SQLAlchemy ORM + Pydantic
    ├─────────────────────────────────────┤
    │   Lifecycle (AppResources)          │  ← DB engine, Redis, integrations
    └─────────────────────────────────────┘

    Routes never touch persistence directly. Every process-wide handle is owned
    by `app.lifecycle.AppResources` and reaches handlers through `Depends()`.
"""

__version__ = "1.0.0"

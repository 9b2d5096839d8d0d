"""client/ -- Client-side session handling for StagePass.

Holds the device's Session, persists it encrypted at rest, and keeps its
access token fresh. Talks to the server only through the AuthBackend
protocol (client/backends.py), so an in-process AuthService and the HTTP API
are interchangeable.

Layer rule: client/ may import auth.models, auth.errors and auth.permissions
(shared types and pure functions) and core/. It never imports auth.store,
auth.credentials or auth.tokens -- those are server internals.
client/backends.py LocalAuthBackend is the one exception: it wraps an
AuthService instance handed to it by the caller.
"""

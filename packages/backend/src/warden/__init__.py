"""Warden — session and authorization layer.

Authenticates callers (bearer JWT, session cookie, HTTP Basic),
authorizes them against a role → permission matrix, runs the
single-use action-token flows (verify account, reset password), and
throttles requests per route and client with a shared counter store.
"""

__version__ = "0.1.0"

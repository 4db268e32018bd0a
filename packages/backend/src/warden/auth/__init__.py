"""Authentication and authorization.

Learn: Three ways in, one identity out:
1. Session cookie "token" → JWT
2. Authorization: Bearer <jwt>
3. Authorization: Basic … (service-to-service routes only, no identity)

Resolved users become an AuthenticatedIdentity; routes then declare the
single permission they need with RequirePermission("resource:action").
"""

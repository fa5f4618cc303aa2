"""Credential verification for the WebSocket and HTTP surfaces.

Token issuance lives in the external auth service; this module only checks
access tokens it has signed.

Services:
    - TokenVerifier: PyJWT-based ``verify_identity(credential) -> userId``.
"""

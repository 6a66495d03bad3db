"""Identity verification for joining connections.

Services:
    - IdentityVerifier: resolves a bearer token to a verified identity via
      the configured userinfo endpoint.
"""

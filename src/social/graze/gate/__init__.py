"""
Gate - OAuth2/OIDC Login Gateway

This package implements the login gateway for the Graze web client. It signs users in with
an external OpenID Connect provider and issues the gateway's own access and refresh tokens,
using Redis as the single source of truth for token liveness and login locking.

Key Components:
- token: Token codec, Redis allow-list ledger and the token lifecycle manager
- handshake: OAuth state/nonce generation and single-use validation
- identity: Identity resolution lock and the user identity store
- provider: Google OpenID Connect client
- login: The login flow composing the components above
- app: aiohttp web application, configuration, handlers and middleware
- model: Database models

Architecture Overview:
1. Login:
   - A handshake (state, nonce) is stored and the browser is sent to the provider
   - The callback consumes the handshake and verifies the provider's ID token
   - First-time users are created under a distributed lock

2. Tokens:
   - Access (15 minutes) and refresh (7 days) JWTs are issued as a pair
   - Every token id is allow-listed in Redis for exactly the token's lifetime
   - Validation checks both the signature and the allow-list, so revocation is immediate
   - Refresh tokens mint new access tokens until they expire or are revoked
"""

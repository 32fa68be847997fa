"""
Token issuance and validation.

- claims.py: The claims carried by access and refresh tokens
- codec.py: JWT signing and verification with jwcrypto
- ledger.py: Redis allow-list of live token ids
- lifecycle.py: Issue, validate, rotate and revoke token pairs
"""

"""
Identity resolution.

- lock.py: Distributed lock guarding first-time account creation
- store.py: Lookup and creation of users by external identity
"""

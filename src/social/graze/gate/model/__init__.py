"""
Database Models

This package defines the database models for the Gate service using SQLAlchemy ORM.

Key Models:
- base.py: Base SQLAlchemy model with common type definitions
- user.py: Local users linked to an external (provider, subject) identity
- health.py: Health monitoring gauge

Token state is not stored in the database; it lives in Redis.
"""

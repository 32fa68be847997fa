"""
Gate Application Layer

This package implements the web application layer for the Gate service, handling HTTP requests
and responses using the aiohttp framework.

Key Components:
- cli.py: Entry point for running the application
- server.py: Web server configuration, component wiring and middleware setup
- config.py: Configuration management using Pydantic settings
- handlers/: Request handlers for login, token and user endpoints
- tasks.py: Background health monitoring
- cors.py: CORS handling for the web client

The application uses several middleware layers:
- Statsd middleware for metrics collection
- CORS middleware for handling cross-origin requests
- Sentry middleware for error reporting

It provides the following main endpoints:
- Login and token endpoints (/auth/*)
- User endpoints (/user/*)
- Health endpoints (/internal/*)
"""

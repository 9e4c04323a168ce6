"""CLI package for the JWT session client

This package provides a command-line interface for logging in, inspecting
and refreshing sessions, and running the OAuth2 PKCE flow.
"""

from cli.main import main

__all__ = [
    "main",
]

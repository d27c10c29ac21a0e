"""SOCKS5 relay front end with Redis-backed node and user management."""

__version__ = "0.1.0"
"""Multiplexing proxy protocol over TLS with traffic padding: sessions, client pool and server."""

__version__ = "0.0.12"
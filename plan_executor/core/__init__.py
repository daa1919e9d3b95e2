"""Ambient infrastructure shared by the engine and the HTTP server: settings and logging."""

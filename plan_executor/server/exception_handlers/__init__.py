"""
Exception handlers for the plan executor server.

Maps the engine's error taxonomy to HTTP status codes and catches everything
else with a global handler.
"""

from .global_handler import setup_exception_handlers

__all__ = ["setup_exception_handlers"]

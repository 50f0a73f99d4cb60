"""
API route handlers.
"""

from . import chat, health

__all__ = ["chat", "health"]

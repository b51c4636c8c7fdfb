"""
Administrative endpoints for KAI Alerts.
"""

from .server import AdminServer

__all__ = [
    "AdminServer",
]

"""
Tracking API routes.
"""

from .tracking import create_tracking_router

__all__ = ["create_tracking_router"]

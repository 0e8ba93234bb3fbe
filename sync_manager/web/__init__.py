"""
Web module initialization.

Contains the HTTP trigger surface and webhook receivers.
"""

from .routes import WebRoutes

__all__ = ['WebRoutes']

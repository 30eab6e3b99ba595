"""API endpoints for the credit decision pipeline"""

from .routes import router

__all__ = ["router"]

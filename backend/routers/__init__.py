"""
Routers package
FastAPI route handlers organized by domain
"""
from . import implementations

__all__ = [
    "implementations",
]

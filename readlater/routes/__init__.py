"""
API route modules.
"""

from .misc import router as misc_router
from .push import router as push_router
from .read_later import public_router as read_later_public_router
from .read_later import router as read_later_router

__all__ = [
    "misc_router",
    "push_router",
    "read_later_router",
    "read_later_public_router",
]

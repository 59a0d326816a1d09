"""HTTP routers."""

from .chat import router as chat_router
from .chat import threads_router

__all__ = ["chat_router", "threads_router"]

"""talkwire transport adapter package."""

from .http import AiohttpTransport

__all__ = ["AiohttpTransport"]

"""
Model backends for chatrelay.
"""
from chatrelay.backends.base import BaseBackend, BackendResponse
from chatrelay.backends.openai_compat import OpenAICompatibleBackend

__all__ = [
    "BaseBackend",
    "BackendResponse",
    "OpenAICompatibleBackend",
]

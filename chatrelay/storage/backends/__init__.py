"""
Vector backend factory for the product index.

    from chatrelay.storage.backends import make_backend
    backend = make_backend("chromadb", path="./data/chroma")

Backends are imported lazily so chromadb is only needed when it is used.
"""

from .base import VectorBackend

_REGISTRY: dict[str, type[VectorBackend]] = {}


def _register():
    if _REGISTRY:
        return
    from .chroma import ChromaBackend
    _REGISTRY["chromadb"] = ChromaBackend


def make_backend(backend_type: str, **kwargs) -> VectorBackend:
    """
    Instantiate a vector backend by name.

    Raises:
        ValueError: If the backend type is not registered.
    """
    _register()
    cls = _REGISTRY.get(backend_type)
    if cls is None:
        available = ", ".join(_REGISTRY.keys())
        raise ValueError(
            f"Unknown vector backend: '{backend_type}'. "
            f"Available: {available}"
        )
    return cls(**kwargs)


__all__ = ["VectorBackend", "make_backend"]

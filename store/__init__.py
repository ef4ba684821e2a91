from .memory import InMemoryDispatchStore

__all__ = ["InMemoryDispatchStore"]

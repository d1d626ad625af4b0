from app.store.base import JobStore

__all__ = ["JobStore"]

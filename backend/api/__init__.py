from .routes_indexer import router as indexer_router

__all__ = ["indexer_router"]

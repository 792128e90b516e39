"""Central registry for SQLAlchemy models, so metadata is complete before migrations."""


def register_all_models() -> None:
    """Import all modules that declare Base subclasses as a side effect."""
    from models.database import (  # noqa: F401
        IndexerRun,
        Position,
        SwapTrade,
        TokenTransfer,
        TrackedToken,
        Wallet,
    )

    _ = (IndexerRun, Position, SwapTrade, TokenTransfer, TrackedToken, Wallet)

from .swap import Trade, TradeSide

__all__ = [
    "Trade",
    "TradeSide",
]

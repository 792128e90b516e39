from datetime import datetime
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict

from models.types import quantize_usd
from services.errors import FeedRecordError
from utils.utcnow import parse_timestamp
from utils.validation import is_eth_address


class TradeSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


def _first(data: dict, *keys: str) -> object:
    for key in keys:
        value = data.get(key)
        if value is not None and value != "":
            return value
    return None


def _to_decimal(raw: object) -> Optional[Decimal]:
    if raw is None or isinstance(raw, bool):
        return None
    try:
        value = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        return None
    if not value.is_finite():
        return None
    return value


def parse_base_units(raw: object, decimals: int) -> Optional[int]:
    """Parse a feed amount into base units.

    Integers and digit-only strings are already base units; anything with a
    fractional part is read as whole tokens and scaled by ``decimals``
    (excess fraction digits truncated).
    """
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    text = str(raw).strip()
    if text.isdigit():
        return int(text)
    value = _to_decimal(text)
    if value is None:
        return None
    scaled = (value * (Decimal(10) ** decimals)).to_integral_value(rounding=ROUND_DOWN)
    return int(scaled)


def to_whole_tokens(amount: int, decimals: int) -> Decimal:
    return Decimal(amount).scaleb(-decimals)


class Trade(BaseModel):
    """One side of one swap, normalized from the feed. Immutable."""

    model_config = ConfigDict(frozen=True)

    wallet_address: str
    token_address: str
    tx_hash: str
    block_number: int = 0
    timestamp: datetime
    side: TradeSide
    token_amount: int  # base units
    token_decimals: int = 18
    price_usd: Decimal
    usd_value: Decimal
    source: str = "swap_feed"

    @property
    def dedup_key(self) -> tuple[str, str, str, str]:
        return (self.wallet_address, self.tx_hash, self.token_address, self.side.value)

    @property
    def sort_key(self) -> tuple:
        # Ties on (timestamp, block) apply buys first so a same-block
        # round trip never sells against an empty position.
        return (
            self.timestamp,
            self.block_number,
            0 if self.side == TradeSide.BUY else 1,
            self.tx_hash,
        )

    @classmethod
    def from_feed_record(cls, data: dict, token_address: str, decimals: int = 18) -> "Trade":
        """Normalize a raw swap feed record for ``token_address``.

        Raises FeedRecordError when the record cannot produce a valid trade.
        """
        token = token_address.lower()
        tx_hash = str(_first(data, "txHash", "tx_hash", "transactionHash") or "").strip().lower()
        if not tx_hash:
            raise FeedRecordError("swap record has no transaction hash")

        wallet = str(_first(data, "walletAddress", "wallet_address", "trader") or "").strip()
        if not is_eth_address(wallet):
            raise FeedRecordError(f"swap record has invalid wallet {wallet!r}", tx_hash=tx_hash)

        timestamp = parse_timestamp(_first(data, "timestamp", "blockTimestamp", "time"))
        if timestamp is None:
            raise FeedRecordError("swap record has no parseable timestamp", tx_hash=tx_hash)

        token_in = str(data.get("tokenIn") or "").strip().lower()
        token_out = str(data.get("tokenOut") or "").strip().lower()
        # Legs are from the wallet's perspective: tokenOut is what it received.
        if token_out == token:
            side = TradeSide.BUY
            raw_amount = data.get("amountOut")
        elif token_in == token:
            side = TradeSide.SELL
            raw_amount = data.get("amountIn")
        else:
            raise FeedRecordError(
                f"swap record does not involve tracked token {token}", tx_hash=tx_hash
            )

        amount = parse_base_units(raw_amount, decimals)
        if amount is None or amount <= 0:
            raise FeedRecordError(f"non-positive token amount {raw_amount!r}", tx_hash=tx_hash)

        whole = to_whole_tokens(amount, decimals)
        price = _to_decimal(_first(data, "priceUsd", "price_usd"))
        if price is None or price <= 0:
            usd_value = _to_decimal(_first(data, "usdValue", "valueUsd", "amountUsd"))
            if usd_value is None or usd_value <= 0 or whole <= 0:
                raise FeedRecordError("swap record has no usable USD price", tx_hash=tx_hash)
            price = usd_value / whole
        price = quantize_usd(price)

        try:
            block_number = int(_first(data, "blockNumber", "block_number") or 0)
        except (TypeError, ValueError):
            block_number = 0

        return cls(
            wallet_address=wallet.lower(),
            token_address=token,
            tx_hash=tx_hash,
            block_number=block_number,
            timestamp=timestamp,
            side=side,
            token_amount=amount,
            token_decimals=decimals,
            price_usd=price,
            usd_value=quantize_usd(whole * price),
            source=str(data.get("source") or "swap_feed")[:32],
        )

import re
from typing import Literal, Optional
from pydantic import BaseModel, field_validator, Field


# Ethereum address regex
ETH_ADDRESS_REGEX = re.compile(r"^0x[a-fA-F0-9]{40}$")
TX_HASH_REGEX = re.compile(r"^0x[a-fA-F0-9]{64}$")
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def validate_eth_address(address: str) -> str:
    """Validate an EVM address and return it lower-cased."""
    if not address:
        raise ValueError("Address cannot be empty")

    address = address.strip()

    if not ETH_ADDRESS_REGEX.match(address):
        raise ValueError(f"Invalid Ethereum address format: {address}")

    return address.lower()


def is_eth_address(value: object) -> bool:
    return isinstance(value, str) and bool(ETH_ADDRESS_REGEX.match(value.strip()))


class SyncTriggerParams(BaseModel):
    """Body of a manual sync trigger."""
    syncType: Literal["incremental", "full"] = "incremental"
    tokenAddress: Optional[str] = None
    secret: Optional[str] = None
    password: Optional[str] = None

    @field_validator("tokenAddress")
    @classmethod
    def validate_token(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        return validate_eth_address(v)


class TrackedTokenParams(BaseModel):
    """Body for registering a tracked token."""
    token_address: str
    symbol: Optional[str] = Field(default=None, max_length=32)
    decimals: int = Field(default=18, ge=0, le=36)

    @field_validator("token_address")
    @classmethod
    def validate_token(cls, v: str) -> str:
        return validate_eth_address(v)

"""
Pydantic Data Models and Validation Schemas

This module defines the data models of the sale ledger using Pydantic. The same
models back the in-memory ledger state, the JSON snapshot written by the sale
store and the payloads returned by the MCP server and the HTTP API.

Key Components:
- Address: lowercase 0x-prefixed 20-byte address type
- Round: one funding window and its resolution outcome
- Contribution: per-round, per-address accounting record
- LedgerStorage: the complete mutable state owned by the sale proxy
- TokenState / BankState: serialisable state of the token and the bank
- RoundConfig: validated parameters for starting a round
- SaleState / RoundView / LeaderRow: read-only views for clients

Storage Layout:
- LedgerStorage field order is the storage layout. Later implementations
  extend it by subclassing and may only append fields.
"""
import re
from typing import Annotated, Dict, List, Optional

from pydantic import AfterValidator, BaseModel, Field

from cofund_sale.access import Role
from cofund_sale.errors import ValidationError

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


def _check_address(value: str) -> str:
    if not isinstance(value, str) or not _ADDRESS_RE.match(value.strip()):
        raise ValueError(f"Invalid address: {value!r}")
    return value.strip().lower()


def normalize_address(value: str) -> str:
    """Validates an address and returns its lowercase form."""
    try:
        return _check_address(value)
    except ValueError as e:
        raise ValidationError(str(e))


Address = Annotated[str, AfterValidator(_check_address)]


class Round(BaseModel):
    round_id: int
    rate: int
    soft_cap_wei: int
    end_time: int
    total_raised: int = 0
    finalized: bool = False
    successful: bool = False
    funds_withdrawn: bool = False
    title: str = ""
    description: str = ""
    started_at: int = 0


class Contribution(BaseModel):
    contribution_wei: int = 0
    entitlement_tokens: int = 0
    claimed_or_refunded: bool = False


class LedgerStorage(BaseModel):
    owner: Address
    treasury: Address
    current_round_id: int = 0
    rounds: Dict[int, Round] = Field(default_factory=dict)
    # round id -> contributor address -> record
    contributions: Dict[int, Dict[str, Contribution]] = Field(default_factory=dict)


class TokenState(BaseModel):
    name: str
    symbol: str
    decimals: int = Field(18, ge=0, le=18)
    total_supply: int = 0
    balances: Dict[str, int] = Field(default_factory=dict)
    roles: Dict[Role, List[str]] = Field(default_factory=dict)


class BankState(BaseModel):
    balances: Dict[str, int] = Field(default_factory=dict)


class RoundConfig(BaseModel):
    rate: int = Field(..., gt=0, description="Token units minted per wei contributed")
    soft_cap_wei: int = Field(..., ge=0)
    end_time: Optional[int] = None
    duration: Optional[int] = Field(None, gt=0, description="Seconds from now, used when end_time is absent")
    title: str = Field("", max_length=200)
    description: str = Field("", max_length=2000)


class SaleState(BaseModel):
    owner: str
    treasury: str
    current_round_id: int
    sale_balance_wei: int
    implementation_version: str
    current_round: Optional[Round] = None


class RoundView(BaseModel):
    round: Round
    account: Optional[str] = None
    contribution: Contribution = Field(default_factory=Contribution)


class LeaderRow(BaseModel):
    buyer: str
    wei_amount: int
    token_amount: int

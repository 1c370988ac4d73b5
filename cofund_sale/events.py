"""
Sale Event Stream

Typed, append-only records emitted by the sale ledger. The stream is the only
interface the leaderboard consumes: any read model must be re-derivable by
replaying it from the first event.

Event Types:
- RoundStarted: round creation with its initial parameters and metadata
- Bought: one accepted contribution (buyer, wei amount, token equivalent)
- Finalized: the success/failure decision of a round
- Claimed / Refunded / Withdrawn: resolution of a round
- RoundMetadataUpdated / EndTimeUpdated: admin corrections
- Upgraded: implementation swap behind the sale proxy
"""
from typing import Annotated, Iterator, List, Literal, Optional, Type, TypeVar, Union

from pydantic import BaseModel, Field

from mcp.server.fastmcp.utilities.logging import get_logger

logger = get_logger(__name__)


class SaleEvent(BaseModel):
    sequence: int = 0
    timestamp: int = 0


class RoundStarted(SaleEvent):
    event: Literal["RoundStarted"] = "RoundStarted"
    round_id: int
    rate: int
    soft_cap_wei: int
    end_time: int
    title: str = ""
    description: str = ""


class Bought(SaleEvent):
    event: Literal["Bought"] = "Bought"
    round_id: int
    buyer: str
    wei_amount: int
    token_amount: int


class Finalized(SaleEvent):
    event: Literal["Finalized"] = "Finalized"
    round_id: int
    successful: bool
    total_raised: int


class Claimed(SaleEvent):
    event: Literal["Claimed"] = "Claimed"
    round_id: int
    account: str
    token_amount: int


class Refunded(SaleEvent):
    event: Literal["Refunded"] = "Refunded"
    round_id: int
    account: str
    wei_amount: int


class Withdrawn(SaleEvent):
    event: Literal["Withdrawn"] = "Withdrawn"
    round_id: int
    treasury: str
    wei_amount: int


class RoundMetadataUpdated(SaleEvent):
    event: Literal["RoundMetadataUpdated"] = "RoundMetadataUpdated"
    round_id: int
    title: str
    description: str


class EndTimeUpdated(SaleEvent):
    event: Literal["EndTimeUpdated"] = "EndTimeUpdated"
    round_id: int
    end_time: int


class Upgraded(SaleEvent):
    event: Literal["Upgraded"] = "Upgraded"
    version: str


AnyEvent = Annotated[
    Union[
        RoundStarted,
        Bought,
        Finalized,
        Claimed,
        Refunded,
        Withdrawn,
        RoundMetadataUpdated,
        EndTimeUpdated,
        Upgraded,
    ],
    Field(discriminator="event"),
]

E = TypeVar("E", bound=SaleEvent)


class EventLog:
    """Append-only event stream. Sequence numbers start at 1."""

    def __init__(self, events: Optional[List[SaleEvent]] = None):
        self._events: List[SaleEvent] = list(events or [])

    def emit(self, event: E) -> E:
        event.sequence = len(self._events) + 1
        self._events.append(event)
        logger.debug(f"Emitted {event.event} #{event.sequence}")
        return event

    def __iter__(self) -> Iterator[SaleEvent]:
        return iter(list(self._events))

    def __len__(self) -> int:
        return len(self._events)

    def of_type(self, event_type: Type[E], since: int = 0) -> List[E]:
        """Returns events of one type with a sequence number greater than `since`."""
        return [e for e in self._events if isinstance(e, event_type) and e.sequence > since]

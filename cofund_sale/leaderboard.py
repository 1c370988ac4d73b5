"""
Contributor Leaderboard

A derived read model folded from the Bought events of the sale. It is rebuilt
from the first event on every call and holds no state of its own, so it always
agrees with the event stream.
"""
from typing import Dict, Iterable, List, Set, Tuple

from cofund_sale.config import LEADERBOARD_SIZE
from cofund_sale.events import Bought, SaleEvent
from cofund_sale.ledger import SaleLedger
from cofund_sale.schemas import LeaderRow
from mcp.server.fastmcp.utilities.logging import get_logger

logger = get_logger(__name__)


def build_leaderboard(
    events: Iterable[SaleEvent],
    limit: int = LEADERBOARD_SIZE,
    excluded_rounds: Iterable[int] = (),
) -> List[LeaderRow]:
    """
    Sums contributions per buyer across the whole event stream.

    Args:
        events: The sale's events from genesis.
        limit: Maximum number of rows returned.
        excluded_rounds: Round ids whose contributions are left out, e.g. the
            failed rounds returned by failed_round_ids.

    Returns:
        Rows sorted by wei contributed, largest first; ties by address.
    """
    skip: Set[int] = set(excluded_rounds)
    totals: Dict[str, Tuple[int, int]] = {}
    for event in events:
        if not isinstance(event, Bought) or event.round_id in skip:
            continue
        buyer = event.buyer.lower()
        wei, tokens = totals.get(buyer, (0, 0))
        totals[buyer] = (wei + event.wei_amount, tokens + event.token_amount)

    rows = [LeaderRow(buyer=b, wei_amount=w, token_amount=t) for b, (w, t) in totals.items()]
    rows.sort(key=lambda r: (-r.wei_amount, r.buyer))
    logger.debug(f"Leaderboard built from {len(totals)} buyer(s), returning top {limit}")
    return rows[: max(limit, 0)]


def failed_round_ids(ledger: SaleLedger) -> List[int]:
    """Rounds that were finalized without reaching their soft cap."""
    return [r.round_id for r in ledger.list_rounds() if r.finalized and not r.successful]

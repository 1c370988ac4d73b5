"""
Entitlement Pricing and Unit Formatting

This module converts base-currency contributions into token entitlements and
formats amounts for humans. A round has a single fixed rate: every wei
contributed is worth `rate` token base units. The entitlement is computed once,
at contribution time, and never recomputed with a later rate.

Unit Conventions:
- Base currency amounts are integer wei (10**18 wei per ETH)
- Token amounts are integer base units (10**decimals units per token)
- Formatting goes through Decimal so no float rounding leaks into
  ledger arithmetic
"""
from decimal import Decimal

from cofund_sale.config import WEI_PER_ETH
from cofund_sale.errors import ValidationError
from mcp.server.fastmcp.utilities.logging import get_logger

logger = get_logger(__name__)


def calculate_entitlement(amount_wei: int, rate: int) -> int:
    """
    Calculates the token entitlement for a contribution.

    Args:
        amount_wei: Contribution in wei.
        rate: Token base units per wei for the round.

    Returns:
        The entitlement in token base units.

    Raises:
        ValidationError: If either value is negative or not an integer.
    """
    if not isinstance(amount_wei, int) or isinstance(amount_wei, bool) or amount_wei < 0:
        raise ValidationError("Contribution must be a non-negative integer amount of wei")
    if not isinstance(rate, int) or isinstance(rate, bool) or rate <= 0:
        raise ValidationError("Rate must be a positive integer")
    tokens = amount_wei * rate
    logger.debug(f"Entitlement for {amount_wei} wei at rate {rate}: {tokens} units")
    return tokens


def wei_to_eth(amount_wei: int) -> Decimal:
    return Decimal(amount_wei) / Decimal(WEI_PER_ETH)


def format_eth(amount_wei: int) -> str:
    return f"{wei_to_eth(amount_wei).normalize():f} ETH"


def format_token_amount(amount: int, decimals: int, symbol: str) -> str:
    """Format token amount with proper decimal places and symbol."""
    token_amount_ui = Decimal(amount) / (Decimal(10) ** decimals)
    return f"{token_amount_ui:.{decimals}f} {symbol}"

"""
COFUND Sale Server - MCP Server Implementation

This module exposes the sale ledger as Model Context Protocol tools. Every
state-changing ledger operation and every read-only query has a tool; the
tools validate their inputs, call into the sale proxy, persist the sale
snapshot after each successful change and turn rejections into messages.

Key Features:
- Multi-round sale with per-round claim, refund and withdrawal
- Admin tools for starting, finalizing and correcting rounds
- Upgrade of the ledger implementation behind a stable proxy address
- Leaderboard derived from the Bought event stream
- Per-address rate limiting of buy requests
- Structured logging of every operation with its duration

Security Notes:
- The `caller` argument identifies the acting address. The transport is
  trusted to authenticate it; the ledger enforces what that address may do.
- Rejections are returned verbatim because they only describe ledger state;
  unexpected errors are logged and reported generically.
"""
import json
import time
from typing import Callable

from pydantic import Field, ValidationError

from mcp.server.fastmcp import Context, FastMCP
from mcp.server.fastmcp.utilities.logging import get_logger

from cofund_sale import config
from cofund_sale import sale_store
from cofund_sale.access import Role
from cofund_sale.errors import (
    InactiveRoundError,
    InsufficientFundsError,
    RateLimitExceededError,
    SaleError,
)
from cofund_sale.leaderboard import build_leaderboard, failed_round_ids
from cofund_sale.ledger import IMPLEMENTATIONS
from cofund_sale.pricing import format_eth, format_token_amount
from cofund_sale.rate_limiter import RateLimiter
from cofund_sale.schemas import RoundConfig, normalize_address

MAX_CONFIG_JSON_LENGTH = 10000
MAX_WEI_AMOUNT = 10**30

logger = get_logger(__name__)

# --- Server Setup ---
mcp = FastMCP(name="COFUND Sale Server")

STATE_PATH = sale_store.DEFAULT_STATE_PATH
deployment = sale_store.load_or_deploy(STATE_PATH)
limiter = RateLimiter()


# --- Helper Functions ---

def _round_arg(round_id: int):
    """Maps the tool convention (0 = current round) onto the ledger's (None = current round)."""
    if not isinstance(round_id, int) or round_id < 0:
        raise ValueError("Round id must be a non-negative integer (0 for the current round)")
    return round_id or None


def _wei_arg(amount_wei: int) -> int:
    if not isinstance(amount_wei, int) or isinstance(amount_wei, bool):
        raise ValueError("Amount must be an integer number of wei")
    if amount_wei > MAX_WEI_AMOUNT:
        raise ValueError("Amount is too large")
    return amount_wei


def _persist() -> None:
    if not sale_store.save_deployment(deployment, STATE_PATH):
        logger.warning("Sale state changed but the snapshot could not be written")


def log_operation_error(operation: str, error: Exception, caller: str, duration: float) -> None:
    """Log operation error with structured information."""
    logger.error(f"{operation} failed: {error}, caller: {caller}, duration: {duration:.3f}s")


def _execute(operation: str, caller: str, action: Callable[[str], str]) -> str:
    """Runs a state-changing action for a validated caller and persists the result."""
    start_time = time.time()
    try:
        caller = normalize_address(caller)
        message = action(caller)
        _persist()
        logger.info(f"{operation} completed for {caller} in {time.time() - start_time:.3f}s")
        return message
    except SaleError as e:
        log_operation_error(operation, e, caller, time.time() - start_time)
        return str(e)
    except ValueError as e:
        log_operation_error(operation, e, caller, time.time() - start_time)
        return f"Error: {e}"
    except Exception as e:
        logger.exception(f"Unexpected error during {operation}: {e}")
        return "An unexpected server error occurred"


# --- Query Tools ---

@mcp.tool()
async def get_sale_state(context: Context) -> str:
    """Get the global sale state and the current round."""
    return deployment.sale.sale_state().model_dump_json(indent=2)


@mcp.tool()
async def list_rounds(context: Context) -> str:
    """List every round, current and historical."""
    return json.dumps([r.model_dump(mode="json") for r in deployment.sale.list_rounds()], indent=2)


@mcp.tool()
async def get_round_info(
    context: Context,
    round_id: int = Field(0, description="Round id, 0 for the current round."),
    account: str = Field("", description="Optional contributor address to include."),
) -> str:
    """Get a round's parameters, totals and outcome, optionally with one contributor's record."""
    try:
        view = deployment.sale.round_view(_round_arg(round_id), account or None)
        return view.model_dump_json(indent=2)
    except SaleError as e:
        logger.warning(f"Round info unavailable for round {round_id}: {e}")
        return str(e)
    except ValueError as e:
        return f"Error: {e}"


@mcp.tool()
async def get_contribution(
    context: Context,
    round_id: int = Field(..., description="Round id, 0 for the current round."),
    account: str = Field(..., description="Contributor address."),
) -> str:
    """Get a contributor's contribution, entitlement and resolution flag for a round."""
    try:
        sale = deployment.sale
        rnd = sale.get_round(_round_arg(round_id))
        record = sale.get_contribution(rnd.round_id, account)
        return record.model_dump_json(indent=2)
    except SaleError as e:
        logger.warning(f"Contribution unavailable for round {round_id}, account {account}: {e}")
        return str(e)
    except ValueError as e:
        return f"Error: {e}"


@mcp.tool()
async def get_leaderboard(
    context: Context,
    limit: int = Field(config.LEADERBOARD_SIZE, description="Maximum number of rows."),
    exclude_failed: bool = Field(False, description="Leave out contributions to failed rounds."),
) -> str:
    """Get the top contributors, summed from the Bought event stream."""
    if not isinstance(limit, int) or limit <= 0:
        return "Error: Limit must be a positive integer"
    excluded = failed_round_ids(deployment.sale) if exclude_failed else []
    rows = build_leaderboard(deployment.events, limit=limit, excluded_rounds=excluded)
    return json.dumps([r.model_dump() for r in rows], indent=2)


# --- Contributor Tools ---

@mcp.tool()
async def buy_tokens(
    context: Context,
    caller: str = Field(..., description="Contributor address."),
    amount_wei: int = Field(..., description="Contribution in wei."),
) -> str:
    """
    Contributes base currency to the current round.

    The entitlement (amount_wei times the round's rate) is recorded and can be
    claimed once the round has been finalized successfully.

    Returns:
        str: Success message with the recorded entitlement, or the rejection.
    """
    start_time = time.time()
    try:
        caller = normalize_address(caller)
        amount_wei = _wei_arg(amount_wei)

        if not limiter.check(caller):
            raise RateLimitExceededError(f"Rate limit exceeded for {caller}")

        sale = deployment.sale
        tokens = sale.buy(caller, amount_wei)
        round_id = sale.current_round_id
        _persist()

        token = deployment.token
        token_display = format_token_amount(tokens, token.decimals, token.symbol)
        logger.info(
            f"Contribution completed for round {round_id}: caller={caller}, "
            f"amount={format_eth(amount_wei)}, entitlement={token_display}, "
            f"duration={time.time() - start_time:.3f}s"
        )
        return f"Contributed {format_eth(amount_wei)} to round {round_id}. Entitlement increased by {token_display}."

    except RateLimitExceededError as e:
        # Already logged in the rate limiter
        return str(e)
    except InactiveRoundError as e:
        log_operation_error("Contribution", e, caller, time.time() - start_time)
        return str(e)
    except InsufficientFundsError as e:
        log_operation_error("Contribution", e, caller, time.time() - start_time)
        return str(e)
    except SaleError as e:
        log_operation_error("Contribution", e, caller, time.time() - start_time)
        return str(e)
    except ValueError as e:
        log_operation_error("Contribution", e, caller, time.time() - start_time)
        return f"Error: {e}"
    except Exception as e:
        logger.exception(f"Unexpected error during contribution: {e}")
        return "An unexpected server error occurred"


@mcp.tool()
async def claim_tokens(
    context: Context,
    caller: str = Field(..., description="Contributor address."),
    round_id: int = Field(0, description="Round id, 0 for the current round."),
) -> str:
    """Mints the caller's entitlement for a successfully finalized round."""

    def action(who: str) -> str:
        minted = deployment.sale.claim(who, _round_arg(round_id))
        token = deployment.token
        return f"Claimed {format_token_amount(minted, token.decimals, token.symbol)}."

    return _execute("Claim", caller, action)


@mcp.tool()
async def refund_contribution(
    context: Context,
    caller: str = Field(..., description="Contributor address."),
    round_id: int = Field(0, description="Round id, 0 for the current round."),
) -> str:
    """Refunds the caller's contribution to a round that missed its soft cap."""

    def action(who: str) -> str:
        refunded = deployment.sale.refund(who, _round_arg(round_id))
        return f"Refunded {format_eth(refunded)}."

    return _execute("Refund", caller, action)


# --- Admin Tools ---

@mcp.tool()
async def start_round(
    context: Context,
    caller: str = Field(..., description="Owner address."),
    config_json: str = Field(..., description="Round configuration as a JSON string."),
) -> str:
    """
    Starts the next round from a JSON configuration.

    Fields: rate, soft_cap_wei, end_time or duration (seconds), title,
    description. Missing rate, soft cap and duration fall back to the
    configured defaults.
    """

    def action(who: str) -> str:
        if not config_json or not isinstance(config_json, str):
            raise ValueError("Configuration JSON must be a non-empty string")
        if len(config_json) > MAX_CONFIG_JSON_LENGTH:
            raise ValueError("Configuration JSON is too large (max 10KB)")
        try:
            data = json.loads(config_json)
        except json.JSONDecodeError:
            raise ValueError("Invalid JSON format provided. Please check your JSON syntax.")
        if not isinstance(data, dict):
            raise ValueError("Configuration JSON must be an object")
        data.setdefault("rate", config.DEFAULT_RATE)
        data.setdefault("soft_cap_wei", config.DEFAULT_SOFT_CAP_WEI)
        try:
            round_config = RoundConfig.model_validate(data)
        except ValidationError as e:
            raise ValueError(f"Invalid round configuration - {e}")

        end_time = round_config.end_time
        if end_time is None:
            end_time = int(time.time()) + (round_config.duration or config.DEFAULT_ROUND_DURATION)
        rnd = deployment.sale.start_round(
            who,
            round_config.rate,
            round_config.soft_cap_wei,
            end_time,
            round_config.title,
            round_config.description,
        )
        return f"Round {rnd.round_id} started: rate {rnd.rate}, soft cap {format_eth(rnd.soft_cap_wei)}, ends at {rnd.end_time}."

    return _execute("Start round", caller, action)


@mcp.tool()
async def finalize_round(
    context: Context,
    caller: str = Field(..., description="Owner address."),
    round_id: int = Field(0, description="Round id, 0 for the current round."),
) -> str:
    """Finalizes a round after its end time, deciding success against the soft cap."""

    def action(who: str) -> str:
        rnd = deployment.sale.finalize(who, _round_arg(round_id))
        outcome = "successful" if rnd.successful else "unsuccessful"
        return f"Round {rnd.round_id} finalized as {outcome} with {format_eth(rnd.total_raised)} raised."

    return _execute("Finalize", caller, action)


@mcp.tool()
async def withdraw_funds(
    context: Context,
    caller: str = Field(..., description="Owner address."),
    round_id: int = Field(0, description="Round id, 0 for the current round."),
) -> str:
    """Pays a successful round's raised funds to the treasury."""

    def action(who: str) -> str:
        amount = deployment.sale.withdraw(who, _round_arg(round_id))
        return f"Withdrew {format_eth(amount)} to treasury {deployment.sale.treasury}."

    return _execute("Withdraw", caller, action)


@mcp.tool()
async def set_round_metadata(
    context: Context,
    caller: str = Field(..., description="Owner address."),
    round_id: int = Field(..., description="Round id, 0 for the current round."),
    title: str = Field(..., description="Round title."),
    description: str = Field("", description="Round description."),
) -> str:
    """Updates the display title and description of a round."""

    def action(who: str) -> str:
        rnd = deployment.sale.get_round(_round_arg(round_id))
        deployment.sale.set_round_metadata(who, rnd.round_id, title, description)
        return f"Round {rnd.round_id} metadata updated."

    return _execute("Set round metadata", caller, action)


@mcp.tool()
async def set_end_time(
    context: Context,
    caller: str = Field(..., description="Owner address."),
    end_time: int = Field(..., description="New end time (unix seconds)."),
    round_id: int = Field(0, description="Round id, 0 for the current round."),
) -> str:
    """Moves the end time of a round that has not been finalized."""

    def action(who: str) -> str:
        rnd = deployment.sale.set_end_time(who, end_time, _round_arg(round_id))
        return f"Round {rnd.round_id} now ends at {rnd.end_time}."

    return _execute("Set end time", caller, action)


@mcp.tool()
async def grant_minter_role(
    context: Context,
    caller: str = Field(..., description="Token owner address."),
    account: str = Field(..., description="Address to receive the minter role."),
) -> str:
    """Grants the token's minter role, normally to the sale proxy address."""

    def action(who: str) -> str:
        deployment.token.grant_role(who, Role.minter, account)
        return f"Granted minter role to {normalize_address(account)}."

    return _execute("Grant minter role", caller, action)


@mcp.tool()
async def upgrade_implementation(
    context: Context,
    caller: str = Field(..., description="Owner address."),
    version: str = Field(..., description="Registered implementation version."),
) -> str:
    """Swaps the ledger implementation behind the sale proxy, keeping its storage."""

    def action(who: str) -> str:
        implementation = IMPLEMENTATIONS.get(version)
        if implementation is None:
            raise ValueError(f"Unknown implementation version '{version}'. Known: {sorted(IMPLEMENTATIONS)}")
        deployment.sale.upgrade_implementation(who, implementation)
        return f"Sale upgraded to {version}."

    return _execute("Upgrade", caller, action)


@mcp.tool()
async def fund_account(
    context: Context,
    account: str = Field(..., description="Address to credit."),
    amount_wei: int = Field(..., description="Amount in wei."),
) -> str:
    """Development faucet: credits base currency to an address. Disabled unless DEV_FAUCET_ENABLED."""
    if not config.DEV_FAUCET_ENABLED:
        return "The development faucet is disabled."

    def action(who: str) -> str:
        balance = deployment.bank.credit(who, _wei_arg(amount_wei))
        return f"Credited {format_eth(amount_wei)} to {who}; balance is now {format_eth(balance)}."

    return _execute("Fund account", account, action)


# --- Main Execution ---
if __name__ == "__main__":
    logger.info("Starting COFUND Sale MCP Server...")
    logger.info(
        f"Sale {deployment.sale.address} ({deployment.sale.implementation_version}) loaded with "
        f"{deployment.sale.current_round_id} round(s)"
    )
    try:
        mcp.run(transport="stdio")
    except KeyboardInterrupt:
        logger.info("Server shutdown requested by user")

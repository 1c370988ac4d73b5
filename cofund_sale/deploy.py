"""
Sale Deployment Wiring

Builds a complete sale: the entitlement token, the base-currency bank, the
event stream and the sale proxy in front of the current ledger
implementation. It then performs the one-time out-of-band wiring step the
claim path depends on, granting Role.minter on the token to the proxy address.
"""
from typing import Optional, Type

from cofund_sale import config
from cofund_sale.access import Role
from cofund_sale.accounts import NativeBank
from cofund_sale.entitlement import EntitlementToken
from cofund_sale.errors import ValidationError
from cofund_sale.events import EventLog
from cofund_sale.ledger import IMPLEMENTATIONS, Clock, SaleLedger
from cofund_sale.proxy import SaleProxy
from cofund_sale.schemas import normalize_address
from mcp.server.fastmcp.utilities.logging import get_logger

logger = get_logger(__name__)


class Deployment:
    """The live objects of one sale, kept together for the service layers and the sale store."""

    def __init__(self, sale: SaleProxy, token: EntitlementToken, bank: NativeBank, events: EventLog):
        self.sale = sale
        self.token = token
        self.bank = bank
        self.events = events


def deploy_sale(
    owner: str = config.OWNER_ADDRESS,
    treasury: str = config.TREASURY_ADDRESS,
    sale_address: str = config.SALE_ADDRESS,
    token_name: str = config.TOKEN_NAME,
    token_symbol: str = config.TOKEN_SYMBOL,
    token_decimals: int = config.TOKEN_DECIMALS,
    implementation: Type[SaleLedger] = SaleLedger,
    bank: Optional[NativeBank] = None,
    clock: Optional[Clock] = None,
    grant_minter: bool = True,
) -> Deployment:
    """
    Deploys a fresh sale with no rounds.

    Args:
        owner: Administrative address of both the sale and the token.
        treasury: Destination of withdrawn funds.
        sale_address: Stable address of the sale proxy.
        implementation: Ledger implementation to put behind the proxy.
        bank: Existing bank to use, e.g. one pre-funded for tests.
        clock: Time source; defaults to the wall clock.
        grant_minter: Whether to grant the minter role to the proxy. Only
            tests that exercise a missing grant turn this off.

    Returns:
        The deployment with its proxy, token, bank and event log.

    Raises:
        ValidationError: If the treasury is the sale address, or the
            implementation is not registered.
    """
    owner = normalize_address(owner)
    treasury = normalize_address(treasury)
    if treasury == normalize_address(sale_address):
        raise ValidationError("The treasury cannot be the sale itself")
    if IMPLEMENTATIONS.get(implementation.version) is not implementation:
        raise ValidationError(f"Implementation '{implementation.version}' is not registered")
    token = EntitlementToken(name=token_name, symbol=token_symbol, decimals=token_decimals, admin=owner)
    bank = bank or NativeBank()
    events = EventLog()
    storage = implementation.storage_model(owner=owner, treasury=treasury)
    sale = SaleProxy(
        address=sale_address,
        implementation=implementation,
        storage=storage,
        token=token,
        bank=bank,
        events=events,
        clock=clock,
    )
    logger.info(f"Sale proxy deployed at {sale.address} ({implementation.version}), owner={owner}, treasury={treasury}")

    if grant_minter:
        token.grant_role(owner, Role.minter, sale.address)

    return Deployment(sale=sale, token=token, bank=bank, events=events)

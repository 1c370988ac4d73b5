"""
Entitlement Token Authority

A mintable token registry with role-gated minting. Tokens are only ever issued
when an address holding Role.minter asks for them; the sale proxy is granted
that role once, at deployment or upgrade time, and mints a contributor's
entitlement when they claim it.
"""
from typing import Optional

from cofund_sale.access import Role, require_role
from cofund_sale.errors import ValidationError
from cofund_sale.schemas import TokenState, normalize_address
from mcp.server.fastmcp.utilities.logging import get_logger

logger = get_logger(__name__)


class EntitlementToken:
    def __init__(
        self,
        name: str = "",
        symbol: str = "",
        decimals: int = 18,
        admin: Optional[str] = None,
        state: Optional[TokenState] = None,
    ):
        if state is None:
            if admin is None:
                raise ValidationError("A new token needs an admin address")
            state = TokenState(
                name=name,
                symbol=symbol,
                decimals=decimals,
                roles={Role.owner: [normalize_address(admin)], Role.minter: []},
            )
        self.state = state

    @property
    def name(self) -> str:
        return self.state.name

    @property
    def symbol(self) -> str:
        return self.state.symbol

    @property
    def decimals(self) -> int:
        return self.state.decimals

    @property
    def total_supply(self) -> int:
        return self.state.total_supply

    def balance_of(self, address: str) -> int:
        return self.state.balances.get(normalize_address(address), 0)

    def has_role(self, role: Role, address: str) -> bool:
        return normalize_address(address) in self.state.roles.get(role, [])

    def grant_role(self, caller: str, role: Role, account: str) -> None:
        """Grants `role` to `account`. Only holders of Role.owner may grant roles."""
        caller = normalize_address(caller)
        account = normalize_address(account)
        require_role(caller, Role.owner, self.state.roles.get(Role.owner, []))
        holders = self.state.roles.setdefault(role, [])
        if account not in holders:
            holders.append(account)
            logger.info(f"Granted {role.value} role on {self.symbol} to {account}")

    def revoke_role(self, caller: str, role: Role, account: str) -> None:
        caller = normalize_address(caller)
        account = normalize_address(account)
        require_role(caller, Role.owner, self.state.roles.get(Role.owner, []))
        holders = self.state.roles.get(role, [])
        if account in holders:
            holders.remove(account)
            logger.info(f"Revoked {role.value} role on {self.symbol} from {account}")

    def mint(self, caller: str, to: str, amount: int) -> None:
        """
        Issues `amount` new base units to `to`.

        Raises:
            AuthorizationError: If the caller does not hold Role.minter.
            ValidationError: If the amount is not positive.
        """
        caller = normalize_address(caller)
        to = normalize_address(to)
        require_role(caller, Role.minter, self.state.roles.get(Role.minter, []))
        if amount <= 0:
            raise ValidationError("Mint amount must be positive")
        self.state.balances[to] = self.state.balances.get(to, 0) + amount
        self.state.total_supply += amount
        logger.debug(f"Minted {amount} {self.symbol} units to {to}")

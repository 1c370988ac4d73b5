"""Role-based access control shared by the sale ledger and the token authority."""
from enum import Enum
from typing import Iterable

from cofund_sale.errors import AuthorizationError


class Role(str, Enum):
    owner = "owner"
    minter = "minter"


def require_role(caller: str, role: Role, holders: Iterable[str]) -> None:
    """
    Rejects the call unless `caller` is one of the `holders` of `role`.

    Evaluated at the top of every privileged operation, before any state is
    read for mutation.

    Raises:
        AuthorizationError: If the caller does not hold the role.
    """
    if caller not in set(holders):
        raise AuthorizationError(f"{caller} lacks the {role.value} role")

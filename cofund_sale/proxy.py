"""
Upgradeable Sale Entry Point

The SaleProxy is the stable address clients talk to. It owns the ledger
storage and delegates every call to the currently registered implementation,
which is instantiated against the proxy's own address and storage. Swapping
the implementation keeps all rounds, contributions and roles in place.

Storage Layout Contract:
- An implementation declares its storage model. A new implementation's
  model must start with exactly the fields of the current one, in order;
  it may only append. Appended fields take their defaults on migration.
- The proxy address never changes, so the minter role granted to it at
  deployment survives upgrades.
"""
import time
from typing import Any, Optional, Type

from cofund_sale.access import Role, require_role
from cofund_sale.accounts import NativeBank
from cofund_sale.entitlement import EntitlementToken
from cofund_sale.errors import StorageLayoutError, ValidationError
from cofund_sale.events import EventLog, Upgraded
from cofund_sale.ledger import IMPLEMENTATIONS, Clock, SaleLedger
from cofund_sale.schemas import LedgerStorage, normalize_address
from mcp.server.fastmcp.utilities.logging import get_logger

logger = get_logger(__name__)


class SaleProxy:
    def __init__(
        self,
        address: str,
        implementation: Type[SaleLedger],
        storage: LedgerStorage,
        token: EntitlementToken,
        bank: NativeBank,
        events: EventLog,
        clock: Optional[Clock] = None,
    ):
        self.address = normalize_address(address)
        self.token = token
        self.bank = bank
        self.events = events
        self._clock = clock
        if not isinstance(storage, implementation.storage_model):
            storage = implementation.storage_model.model_validate(storage.model_dump())
        self._impl = self._bind(implementation, storage)

    def _bind(self, implementation: Type[SaleLedger], storage: LedgerStorage) -> SaleLedger:
        return implementation(
            address=self.address,
            storage=storage,
            token=self.token,
            bank=self.bank,
            events=self.events,
            clock=self._clock,
        )

    @property
    def implementation(self) -> Type[SaleLedger]:
        return type(self._impl)

    @property
    def storage(self) -> LedgerStorage:
        return self._impl.storage

    def upgrade_implementation(self, caller: str, new_implementation: Type[SaleLedger]) -> None:
        """
        Swaps the logic behind the proxy while preserving its storage.

        Raises:
            AuthorizationError: If the caller is not the owner.
            ValidationError: If the implementation is not registered under its
                version.
            StorageLayoutError: If the new storage model is not an append-only
                extension of the current one.
            ReentrantCallError: If the sale is in the middle of an external call.
        """
        caller = normalize_address(caller)
        require_role(caller, Role.owner, [self.storage.owner])
        self._impl._not_entered()
        if IMPLEMENTATIONS.get(new_implementation.version) is not new_implementation:
            raise ValidationError(
                f"Implementation {new_implementation.__name__} is not registered as version "
                f"'{new_implementation.version}'; use register_implementation"
            )

        old_fields = list(type(self.storage).model_fields)
        new_fields = list(new_implementation.storage_model.model_fields)
        if new_fields[: len(old_fields)] != old_fields:
            raise StorageLayoutError(
                f"Storage layout of {new_implementation.version} is not an append-only extension: "
                f"{old_fields} -> {new_fields}"
            )

        old_version = self._impl.version
        migrated = new_implementation.storage_model.model_validate(self.storage.model_dump())
        self._impl = self._bind(new_implementation, migrated)

        now = self._clock() if self._clock is not None else int(time.time())
        self.events.emit(Upgraded(version=new_implementation.version, timestamp=now))
        logger.info(f"Sale proxy {self.address} upgraded from {old_version} to {new_implementation.version}")

    def __getattr__(self, name: str) -> Any:
        # only reached for names the proxy itself does not define
        if name == "_impl":
            raise AttributeError(name)
        return getattr(self._impl, name)

"""
Sale Ledger - Round Lifecycle State Machine

This module implements the core of the crowdsale: round creation, contribution
accounting, the finalization decision and the claim/refund/withdraw resolution
paths. Everything else in the package is a client of this state machine.

Round Lifecycle:
1. start_round: the owner opens round N+1 once round N is finalized and the
   sale balance has drained to zero
2. buy: contributors send wei while now < end_time; entitlement is recorded
   at the round's rate, nothing is minted yet
3. finalize: after end_time the owner seals the round; success is
   total_raised >= soft_cap_wei and never changes again
4. claim / refund / withdraw: contributors mint their entitlement (success)
   or recover their contribution (failure); the owner pays the raised funds
   to the treasury (success). Any historical round can be resolved.

Failure Semantics:
- Every precondition is checked before the first write. A rejected call
  raises a SaleError subclass and leaves no trace.
- Resolution paths flip their resolved flag before the external call (mint
  or payout). A re-entrant call observes the flag and is rejected. If the
  external call itself fails the flag is restored and TransactionFailedError
  is raised, so the caller may retry.
- While an external call runs, every other state-changing operation raises
  ReentrantCallError, so a failed call never leaves foreign changes behind.

State:
- All mutable state lives in a LedgerStorage instance passed in by the owner
  of the ledger (normally the SaleProxy). Apart from the flag marking a
  running external call the ledger keeps no other state, so tests can build
  isolated instances freely.
"""
import time
from contextlib import contextmanager
from typing import Callable, Dict, List, Optional, Type

from cofund_sale.access import Role, require_role
from cofund_sale.accounts import NativeBank
from cofund_sale.entitlement import EntitlementToken
from cofund_sale.errors import (
    DoubleResolutionError,
    InactiveRoundError,
    PhaseError,
    ReentrantCallError,
    RoundCreationError,
    TransactionFailedError,
    UnknownRoundError,
    ValidationError,
    ZeroValueError,
)
from cofund_sale.events import (
    Bought,
    Claimed,
    EndTimeUpdated,
    EventLog,
    Finalized,
    Refunded,
    RoundMetadataUpdated,
    RoundStarted,
    SaleEvent,
    Withdrawn,
)
from cofund_sale.pricing import calculate_entitlement
from cofund_sale.schemas import (
    Contribution,
    LedgerStorage,
    Round,
    RoundView,
    SaleState,
    normalize_address,
)
from mcp.server.fastmcp.utilities.logging import get_logger

logger = get_logger(__name__)

Clock = Callable[[], int]


def _now() -> int:
    return int(time.time())


def _require_int(name: str, value: int) -> None:
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValidationError(f"{name} must be an integer")


class SaleLedger:
    """Round ledger bound to the storage and address of a sale proxy."""

    version = "v1"
    storage_model: Type[LedgerStorage] = LedgerStorage

    def __init__(
        self,
        address: str,
        storage: LedgerStorage,
        token: EntitlementToken,
        bank: NativeBank,
        events: EventLog,
        clock: Optional[Clock] = None,
    ):
        self.address = normalize_address(address)
        self.storage = storage
        self.token = token
        self.bank = bank
        self.events = events
        self._clock = clock or _now
        self._entered = False

    # --- Internal helpers ---

    def _only_owner(self, caller: str) -> None:
        require_role(caller, Role.owner, [self.storage.owner])

    def _not_entered(self) -> None:
        if self._entered:
            raise ReentrantCallError("Sale is executing an external call; state changes must wait for it")

    @contextmanager
    def _external_call(self):
        self._entered = True
        try:
            yield
        finally:
            self._entered = False

    def _round(self, round_id: Optional[int]) -> Round:
        if round_id is None:
            round_id = self.storage.current_round_id
            if round_id == 0:
                raise PhaseError("No round has been started")
        rnd = self.storage.rounds.get(round_id)
        if rnd is None:
            raise UnknownRoundError(f"Round {round_id} does not exist")
        return rnd

    def _record(self, round_id: int, account: str) -> Optional[Contribution]:
        return self.storage.contributions.get(round_id, {}).get(account)

    def _emit(self, event: SaleEvent) -> None:
        event.timestamp = self._clock()
        self.events.emit(event)

    # --- Round creation ---

    def start_round(
        self,
        caller: str,
        rate: int,
        soft_cap_wei: int,
        end_time: int,
        title: str = "",
        description: str = "",
    ) -> Round:
        """
        Opens the next round.

        Args:
            caller: Address invoking the operation; must be the owner.
            rate: Token base units per wei, fixed for the round's lifetime.
            soft_cap_wei: Minimum total raised for the round to succeed.
            end_time: Unix timestamp after which contributions stop.
            title: Display metadata.
            description: Display metadata.

        Returns:
            A copy of the new round record.

        Raises:
            AuthorizationError: If the caller is not the owner.
            ValidationError: If rate, soft cap or end time are invalid.
            RoundCreationError: If the current round is not finalized, or the
                sale still holds funds from earlier rounds.
        """
        caller = normalize_address(caller)
        self._only_owner(caller)
        self._not_entered()
        _require_int("rate", rate)
        _require_int("soft_cap_wei", soft_cap_wei)
        _require_int("end_time", end_time)
        now = self._clock()
        if rate <= 0:
            raise ValidationError("Rate must be positive")
        if soft_cap_wei < 0:
            raise ValidationError("Soft cap cannot be negative")
        if end_time <= now:
            raise ValidationError(f"End time {end_time} must be in the future (now {now})")

        storage = self.storage
        if storage.current_round_id >= 1:
            current = storage.rounds[storage.current_round_id]
            if not current.finalized:
                raise RoundCreationError(f"Round {current.round_id} is not finalized")
            balance = self.bank.balance_of(self.address)
            if balance != 0:
                raise RoundCreationError(
                    f"Sale still holds {balance} wei from earlier rounds; resolve refunds and withdrawals first"
                )

        round_id = storage.current_round_id + 1
        rnd = Round(
            round_id=round_id,
            rate=rate,
            soft_cap_wei=soft_cap_wei,
            end_time=end_time,
            title=title,
            description=description,
            started_at=now,
        )
        storage.rounds[round_id] = rnd
        storage.contributions[round_id] = {}
        storage.current_round_id = round_id

        self._emit(
            RoundStarted(
                round_id=round_id,
                rate=rate,
                soft_cap_wei=soft_cap_wei,
                end_time=end_time,
                title=title,
                description=description,
            )
        )
        logger.info(f"Round {round_id} started: rate={rate}, soft_cap={soft_cap_wei} wei, end_time={end_time}")
        return rnd.model_copy()

    # --- Contribution ---

    def buy(self, caller: str, amount_wei: int) -> int:
        """
        Records a contribution of `amount_wei` to the current round.

        The wei moves from the caller to the sale address; the entitlement
        (amount_wei * rate) is only recorded, never minted here.

        Returns:
            The entitlement added by this contribution, in token base units.

        Raises:
            PhaseError: If no round has been started.
            InactiveRoundError: If the round has ended or is finalized.
            ZeroValueError: If the amount is zero or negative.
            ValidationError: If the caller is the sale itself.
            InsufficientFundsError: If the caller cannot pay.
        """
        caller = normalize_address(caller)
        if caller == self.address:
            raise ValidationError("The sale cannot contribute to itself")
        self._not_entered()
        rnd = self._round(None)
        now = self._clock()
        if rnd.finalized:
            raise InactiveRoundError(f"Round {rnd.round_id} is finalized")
        if now >= rnd.end_time:
            raise InactiveRoundError(f"Round {rnd.round_id} ended at {rnd.end_time} (now {now})")
        _require_int("amount_wei", amount_wei)
        if amount_wei <= 0:
            raise ZeroValueError("Contribution must be greater than zero")

        tokens = calculate_entitlement(amount_wei, rnd.rate)
        self.bank.transfer(caller, self.address, amount_wei)

        record = self.storage.contributions.setdefault(rnd.round_id, {}).setdefault(caller, Contribution())
        record.contribution_wei += amount_wei
        record.entitlement_tokens += tokens
        rnd.total_raised += amount_wei

        self._emit(Bought(round_id=rnd.round_id, buyer=caller, wei_amount=amount_wei, token_amount=tokens))
        logger.debug(f"Round {rnd.round_id}: {caller} contributed {amount_wei} wei for {tokens} units")
        return tokens

    # --- Finalization ---

    def finalize(self, caller: str, round_id: Optional[int] = None) -> Round:
        """
        Seals a round and decides its outcome permanently.

        Raises:
            AuthorizationError: If the caller is not the owner.
            PhaseError: If the round is already finalized or has not ended.
        """
        caller = normalize_address(caller)
        self._only_owner(caller)
        self._not_entered()
        rnd = self._round(round_id)
        now = self._clock()
        if rnd.finalized:
            raise PhaseError(f"Round {rnd.round_id} is already finalized")
        if now < rnd.end_time:
            raise PhaseError(f"Round {rnd.round_id} has not ended yet (ends at {rnd.end_time}, now {now})")

        rnd.finalized = True
        rnd.successful = rnd.total_raised >= rnd.soft_cap_wei

        self._emit(Finalized(round_id=rnd.round_id, successful=rnd.successful, total_raised=rnd.total_raised))
        logger.info(
            f"Round {rnd.round_id} finalized: successful={rnd.successful}, "
            f"raised={rnd.total_raised} wei, soft_cap={rnd.soft_cap_wei} wei"
        )
        return rnd.model_copy()

    # --- Resolution ---

    def claim(self, caller: str, round_id: Optional[int] = None) -> int:
        """
        Mints the caller's entitlement for a successful round.

        Returns:
            The number of token base units minted.

        Raises:
            PhaseError: If the round is not finalized or was unsuccessful.
            DoubleResolutionError: If the caller already claimed.
            ZeroValueError: If the caller has no entitlement in the round.
            TransactionFailedError: If minting fails; nothing is changed.
        """
        caller = normalize_address(caller)
        rnd = self._round(round_id)
        if not rnd.finalized:
            raise PhaseError(f"Round {rnd.round_id} is not finalized")
        if not rnd.successful:
            raise PhaseError(f"Round {rnd.round_id} did not reach its soft cap; use refund")
        record = self._record(rnd.round_id, caller)
        if record is not None and record.claimed_or_refunded:
            raise DoubleResolutionError(f"{caller} already claimed round {rnd.round_id}")
        if record is None or record.entitlement_tokens <= 0:
            raise ZeroValueError(f"{caller} has no entitlement in round {rnd.round_id}")
        self._not_entered()

        amount = record.entitlement_tokens
        record.claimed_or_refunded = True
        try:
            with self._external_call():
                self.token.mint(self.address, caller, amount)
        except Exception as e:
            record.claimed_or_refunded = False
            logger.error(f"Mint of {amount} units to {caller} for round {rnd.round_id} failed: {e}")
            raise TransactionFailedError(f"Mint for round {rnd.round_id} failed: {e}") from e

        self._emit(Claimed(round_id=rnd.round_id, account=caller, token_amount=amount))
        logger.info(f"Round {rnd.round_id}: {caller} claimed {amount} units")
        return amount

    def refund(self, caller: str, round_id: Optional[int] = None) -> int:
        """
        Returns the caller's contribution for an unsuccessful round.

        Returns:
            The number of wei paid back.

        Raises:
            PhaseError: If the round is not finalized or was successful.
            DoubleResolutionError: If the caller was already refunded.
            ZeroValueError: If the caller contributed nothing to the round.
            TransactionFailedError: If the payout fails; nothing is changed.
        """
        caller = normalize_address(caller)
        rnd = self._round(round_id)
        if not rnd.finalized:
            raise PhaseError(f"Round {rnd.round_id} is not finalized")
        if rnd.successful:
            raise PhaseError(f"Round {rnd.round_id} was successful; use claim")
        record = self._record(rnd.round_id, caller)
        if record is not None and record.claimed_or_refunded:
            raise DoubleResolutionError(f"{caller} was already refunded for round {rnd.round_id}")
        if record is None or record.contribution_wei <= 0:
            raise ZeroValueError(f"{caller} has no contribution in round {rnd.round_id}")
        self._not_entered()

        amount = record.contribution_wei
        record.claimed_or_refunded = True
        try:
            with self._external_call():
                self.bank.transfer(self.address, caller, amount)
        except Exception as e:
            record.claimed_or_refunded = False
            logger.error(f"Refund of {amount} wei to {caller} for round {rnd.round_id} failed: {e}")
            raise TransactionFailedError(f"Refund for round {rnd.round_id} failed: {e}") from e

        self._emit(Refunded(round_id=rnd.round_id, account=caller, wei_amount=amount))
        logger.info(f"Round {rnd.round_id}: refunded {amount} wei to {caller}")
        return amount

    def withdraw(self, caller: str, round_id: Optional[int] = None) -> int:
        """
        Pays a successful round's raised funds to the treasury.

        Returns:
            The number of wei paid to the treasury.

        Raises:
            AuthorizationError: If the caller is not the owner.
            PhaseError: If the round is not finalized or was unsuccessful.
            DoubleResolutionError: If the funds were already withdrawn.
            TransactionFailedError: If the payout fails; nothing is changed.
        """
        caller = normalize_address(caller)
        self._only_owner(caller)
        rnd = self._round(round_id)
        if not rnd.finalized:
            raise PhaseError(f"Round {rnd.round_id} is not finalized")
        if not rnd.successful:
            raise PhaseError(f"Round {rnd.round_id} was unsuccessful; contributors are refunded instead")
        if rnd.funds_withdrawn:
            raise DoubleResolutionError(f"Funds of round {rnd.round_id} were already withdrawn")
        self._not_entered()

        amount = rnd.total_raised
        treasury = self.storage.treasury
        rnd.funds_withdrawn = True
        if amount > 0:
            try:
                with self._external_call():
                    self.bank.transfer(self.address, treasury, amount)
            except Exception as e:
                rnd.funds_withdrawn = False
                logger.error(f"Withdrawal of {amount} wei for round {rnd.round_id} failed: {e}")
                raise TransactionFailedError(f"Withdrawal for round {rnd.round_id} failed: {e}") from e

        self._emit(Withdrawn(round_id=rnd.round_id, treasury=treasury, wei_amount=amount))
        logger.info(f"Round {rnd.round_id}: withdrew {amount} wei to treasury {treasury}")
        return amount

    # --- Admin corrections ---

    def set_round_metadata(self, caller: str, round_id: int, title: str, description: str) -> Round:
        caller = normalize_address(caller)
        self._only_owner(caller)
        self._not_entered()
        rnd = self._round(round_id)
        rnd.title = title
        rnd.description = description
        self._emit(RoundMetadataUpdated(round_id=rnd.round_id, title=title, description=description))
        logger.info(f"Round {rnd.round_id} metadata updated")
        return rnd.model_copy()

    def set_end_time(self, caller: str, end_time: int, round_id: Optional[int] = None) -> Round:
        """
        Moves the end time of an unfinalized round.

        Raises:
            PhaseError: If the round is already finalized. The correction is
                never silently ignored; callers decide whether to tolerate it.
            ValidationError: If the new end time is not in the future.
        """
        caller = normalize_address(caller)
        self._only_owner(caller)
        self._not_entered()
        rnd = self._round(round_id)
        _require_int("end_time", end_time)
        if rnd.finalized:
            raise PhaseError(f"Round {rnd.round_id} is finalized; its end time is fixed")
        now = self._clock()
        if end_time <= now:
            raise ValidationError(f"End time {end_time} must be in the future (now {now})")
        rnd.end_time = end_time
        self._emit(EndTimeUpdated(round_id=rnd.round_id, end_time=end_time))
        logger.info(f"Round {rnd.round_id} end time set to {end_time}")
        return rnd.model_copy()

    def set_treasury(self, caller: str, treasury: str) -> None:
        caller = normalize_address(caller)
        self._only_owner(caller)
        self._not_entered()
        treasury = normalize_address(treasury)
        if treasury == self.address:
            raise ValidationError("The treasury cannot be the sale itself")
        self.storage.treasury = treasury
        logger.info(f"Treasury set to {self.storage.treasury}")

    def transfer_ownership(self, caller: str, new_owner: str) -> None:
        caller = normalize_address(caller)
        self._only_owner(caller)
        self._not_entered()
        self.storage.owner = normalize_address(new_owner)
        logger.info(f"Ownership transferred from {caller} to {self.storage.owner}")

    # --- Queries ---

    @property
    def owner(self) -> str:
        return self.storage.owner

    @property
    def treasury(self) -> str:
        return self.storage.treasury

    @property
    def current_round_id(self) -> int:
        return self.storage.current_round_id

    @property
    def sale_balance(self) -> int:
        return self.bank.balance_of(self.address)

    @property
    def implementation_version(self) -> str:
        return self.version

    def get_round(self, round_id: Optional[int] = None) -> Round:
        return self._round(round_id).model_copy()

    def list_rounds(self) -> List[Round]:
        return [self.storage.rounds[i].model_copy() for i in sorted(self.storage.rounds)]

    def get_contribution(self, round_id: int, account: str) -> Contribution:
        rnd = self._round(round_id)
        record = self._record(rnd.round_id, normalize_address(account))
        return record.model_copy() if record is not None else Contribution()

    def contributions_for(self, round_id: int) -> Dict[str, Contribution]:
        rnd = self._round(round_id)
        return {a: c.model_copy() for a, c in self.storage.contributions.get(rnd.round_id, {}).items()}

    def round_view(self, round_id: Optional[int] = None, account: Optional[str] = None) -> RoundView:
        rnd = self.get_round(round_id)
        if account is None:
            return RoundView(round=rnd)
        account = normalize_address(account)
        return RoundView(round=rnd, account=account, contribution=self.get_contribution(rnd.round_id, account))

    def sale_state(self) -> SaleState:
        current = None
        if self.storage.current_round_id:
            current = self.get_round(None)
        return SaleState(
            owner=self.storage.owner,
            treasury=self.storage.treasury,
            current_round_id=self.storage.current_round_id,
            sale_balance_wei=self.sale_balance,
            implementation_version=self.implementation_version,
            current_round=current,
        )


IMPLEMENTATIONS: Dict[str, Type[SaleLedger]] = {SaleLedger.version: SaleLedger}


def register_implementation(implementation: Type[SaleLedger]) -> Type[SaleLedger]:
    """Makes an implementation available to upgrades and snapshot loading by its version."""
    IMPLEMENTATIONS[implementation.version] = implementation
    return implementation

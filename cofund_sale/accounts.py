"""
Base-Currency Bank

In-process model of the pooled base-currency balances of every address,
including the sale's own address. The sale ledger receives contributions and
pays out refunds and withdrawals through it.

Receiver Hooks:
- An address may register a hook that runs right after it is credited. The
  hook is foreign code: it may call back into the sale ledger, which is
  exactly the re-entrancy the ledger guards against. If the hook raises, every
  balance is restored to its value before the transfer, including whatever
  the hook moved itself, and TransactionFailedError is raised.
"""
from typing import Callable, Dict, Optional

from cofund_sale.errors import InsufficientFundsError, TransactionFailedError, ValidationError
from cofund_sale.schemas import BankState, normalize_address
from mcp.server.fastmcp.utilities.logging import get_logger

logger = get_logger(__name__)

ReceiverHook = Callable[[str, int], None]


class NativeBank:
    def __init__(self, state: Optional[BankState] = None):
        self.state = state or BankState()
        self._receivers: Dict[str, ReceiverHook] = {}

    def balance_of(self, address: str) -> int:
        return self.state.balances.get(normalize_address(address), 0)

    def credit(self, address: str, amount: int) -> int:
        """Creates `amount` wei out of thin air for `address` (genesis and dev faucet)."""
        if amount <= 0:
            raise ValidationError("Credit amount must be positive")
        address = normalize_address(address)
        self.state.balances[address] = self.state.balances.get(address, 0) + amount
        logger.debug(f"Credited {amount} wei to {address}")
        return self.state.balances[address]

    def register_receiver(self, address: str, hook: Optional[ReceiverHook]) -> None:
        """Registers (or clears, with None) the hook run after `address` is credited."""
        address = normalize_address(address)
        if hook is None:
            self._receivers.pop(address, None)
        else:
            self._receivers[address] = hook

    def transfer(self, sender: str, recipient: str, amount: int) -> None:
        """
        Moves `amount` wei from `sender` to `recipient`.

        Raises:
            ValidationError: If the amount is not positive.
            InsufficientFundsError: If the sender cannot cover the amount.
            TransactionFailedError: If the recipient's hook rejects the payment.
        """
        if amount <= 0:
            raise ValidationError("Transfer amount must be positive")
        sender = normalize_address(sender)
        recipient = normalize_address(recipient)
        balances = self.state.balances
        available = balances.get(sender, 0)
        if available < amount:
            raise InsufficientFundsError(f"{sender} holds {available} wei, {amount} wei required")

        hook = self._receivers.get(recipient)
        # restored wholesale if the hook fails, whatever it moved in between
        saved = dict(balances) if hook is not None else None

        balances[sender] = available - amount
        balances[recipient] = balances.get(recipient, 0) + amount

        if hook is None:
            return
        try:
            hook(sender, amount)
        except Exception as e:
            self.state.balances = saved
            logger.warning(f"Receiver {recipient} rejected {amount} wei from {sender}: {e}")
            raise TransactionFailedError(f"Transfer to {recipient} failed: {e}") from e

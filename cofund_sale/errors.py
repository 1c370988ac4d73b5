"""
Custom Exception Classes for the COFUND Sale Ledger

This module defines the exception classes raised by the sale ledger, the token
authority and the service layers built on top of them. Every rejection of a
ledger operation is a subclass of SaleError, so callers can tell a refused
request apart from a programming error with a single except clause and still
distinguish the individual causes.

Exception Categories:
- Authorization Errors: caller lacks the role an operation requires
- Phase Errors: operation invoked outside its valid round phase, or
  re-entrantly during a mint or payout
- Double-Resolution Errors: claim/refund/withdraw already executed
- Zero-Value Errors: nothing to contribute, claim or refund
- Round Creation Errors: previous round unresolved
- Transfer Errors: insufficient balance or a failed external leg
- Upgrade Errors: incompatible storage layout
- Rate Limiting and Configuration Errors: service-level concerns

Usage:
    Ledger operations raise these synchronously and never mutate state before
    raising. The MCP server and HTTP API catch them, log them and return the
    message to the client.
"""


class SaleError(Exception):
    """Base class for every rejected sale operation."""


class AuthorizationError(SaleError):
    """Raised when the caller does not hold the role an operation requires."""


class PhaseError(SaleError):
    """Raised when an operation is invoked outside its valid round phase."""


class InactiveRoundError(PhaseError):
    """Raised when a contribution arrives outside the active window of the round."""


class UnknownRoundError(PhaseError):
    """Raised when an operation names a round that has never been started."""


class ReentrantCallError(PhaseError):
    """Raised when a state change is attempted while the sale is making an external call."""


class DoubleResolutionError(SaleError):
    """Raised when a claim, refund or withdrawal has already been executed."""


class ZeroValueError(SaleError):
    """Raised for zero contributions or when there is nothing to claim or refund."""


class RoundCreationError(SaleError):
    """Raised when a new round cannot be started because the previous one is unresolved."""


class InsufficientFundsError(SaleError):
    """Raised when an address cannot cover a base-currency transfer."""


class TransactionFailedError(SaleError):
    """Raised if the external leg of an operation (mint or payout) fails."""


class StorageLayoutError(SaleError):
    """Raised when an upgrade would reorder or drop existing storage fields."""


class ValidationError(SaleError):
    """Raised when input validation fails."""


class RateLimitExceededError(Exception):
    """Raised when the rate limit is exceeded for API requests."""


class ConfigurationError(Exception):
    """Raised when there are configuration-related errors."""

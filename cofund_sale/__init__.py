"""
COFUND Sale Package Initialization

This package provides a multi-round crowdsale ledger. Contributors send base
currency during a time-boxed round, receive an entitlement in the COFUND token
at the round's fixed rate, and after the round is finalized either claim their
tokens (soft cap reached) or get their contribution back (soft cap missed).

The package includes:
- The round lifecycle state machine (ledger) behind an upgradeable proxy
- A role-gated mintable entitlement token
- An append-only event stream and the leaderboard derived from it
- JSON persistence of a complete sale
- An MCP server exposing every operation, and a read-only HTTP API
"""

import pytest

from conftest import ALICE, BOB, CAROL, ETH, OWNER, SALE, TREASURY, START_TIME
from cofund_sale.access import Role
from cofund_sale.deploy import deploy_sale
from cofund_sale.errors import (
    AuthorizationError,
    DoubleResolutionError,
    InactiveRoundError,
    InsufficientFundsError,
    PhaseError,
    ReentrantCallError,
    RoundCreationError,
    TransactionFailedError,
    UnknownRoundError,
    ValidationError,
    ZeroValueError,
)
from cofund_sale.events import Bought, Finalized, RoundMetadataUpdated, RoundStarted


def assert_totals_consistent(sale):
    for rnd in sale.list_rounds():
        contributed = sum(c.contribution_wei for c in sale.contributions_for(rnd.round_id).values())
        assert rnd.total_raised == contributed


def run_successful_round(sale, clock, rate=200, buys=((ALICE, ETH // 20), (BOB, ETH // 20))):
    sale.start_round(OWNER, rate, ETH // 10, clock.now + 60)
    for buyer, amount in buys:
        sale.buy(buyer, amount)
    clock.advance(61)
    return sale.finalize(OWNER)


# --- Scenarios ---

def test_success_path_claim_and_withdraw(deployment, sale, clock, bank):
    sale.start_round(OWNER, 200, ETH // 10, clock.now + 60, "Seed", "First round")

    added = sale.buy(ALICE, ETH // 20)
    assert added == 10 * 10**18
    assert sale.get_contribution(1, ALICE).entitlement_tokens == 10 * 10**18

    sale.buy(BOB, ETH // 20)
    assert sale.get_round().total_raised == ETH // 10
    assert_totals_consistent(sale)

    clock.advance(120)
    rnd = sale.finalize(OWNER)
    assert rnd.finalized is True
    assert rnd.successful is True

    sale.claim(ALICE)
    assert deployment.token.balance_of(ALICE) == 10 * 10 ** deployment.token.decimals
    assert sale.get_contribution(1, ALICE).claimed_or_refunded is True

    treasury_before = bank.balance_of(TREASURY)
    withdrawn = sale.withdraw(OWNER)
    assert withdrawn == ETH // 10
    assert bank.balance_of(TREASURY) - treasury_before == sale.get_round().total_raised
    assert sale.get_round().funds_withdrawn is True
    assert sale.sale_balance == 0


def test_failure_path_refund(sale, clock, bank):
    sale.start_round(OWNER, 200, ETH, clock.now + 60)
    before = bank.balance_of(ALICE)
    sale.buy(ALICE, ETH // 100)
    assert bank.balance_of(ALICE) == before - ETH // 100

    clock.advance(120)
    rnd = sale.finalize(OWNER)
    assert rnd.successful is False

    refunded = sale.refund(ALICE)
    assert refunded == ETH // 100
    assert bank.balance_of(ALICE) == before
    assert sale.get_contribution(1, ALICE).claimed_or_refunded is True

    with pytest.raises(DoubleResolutionError):
        sale.refund(ALICE)
    assert bank.balance_of(ALICE) == before


def test_double_claim_is_rejected(deployment, sale, clock):
    run_successful_round(sale, clock)
    sale.claim(ALICE)
    balance = deployment.token.balance_of(ALICE)

    with pytest.raises(DoubleResolutionError):
        sale.claim(ALICE)
    assert deployment.token.balance_of(ALICE) == balance
    assert deployment.token.total_supply == balance


def test_round_isolation_of_entitlements(deployment, sale, clock):
    run_successful_round(sale, clock, rate=200)
    sale.withdraw(OWNER)

    sale.start_round(OWNER, 500, 0, clock.now + 60)
    sale.buy(ALICE, ETH // 10)

    assert sale.get_contribution(1, ALICE).entitlement_tokens == (ETH // 20) * 200
    assert sale.get_contribution(2, ALICE).entitlement_tokens == (ETH // 10) * 500
    assert sale.get_round(1).rate == 200
    assert sale.get_round(2).rate == 500


def test_round_creation_gate(sale, clock):
    sale.start_round(OWNER, 200, ETH, clock.now + 60)
    sale.buy(ALICE, ETH // 100)

    with pytest.raises(RoundCreationError):
        sale.start_round(OWNER, 300, ETH, clock.now + 600)

    clock.advance(61)
    sale.finalize(OWNER)
    with pytest.raises(RoundCreationError):
        sale.start_round(OWNER, 300, ETH, clock.now + 600)
    assert sale.current_round_id == 1

    sale.refund(ALICE)
    rnd = sale.start_round(OWNER, 300, ETH, clock.now + 600)
    assert rnd.round_id == 2
    assert sale.current_round_id == 2


def test_round_creation_gate_after_success_needs_withdrawal(sale, clock):
    run_successful_round(sale, clock)
    with pytest.raises(RoundCreationError):
        sale.start_round(OWNER, 200, ETH, clock.now + 60)
    sale.withdraw(OWNER)
    assert sale.start_round(OWNER, 200, ETH, clock.now + 60).round_id == 2


def test_escape_hatch_resolves_historical_round(deployment, sale, clock):
    run_successful_round(sale, clock)
    sale.withdraw(OWNER)
    sale.start_round(OWNER, 100, ETH, clock.now + 60)

    minted = sale.claim(BOB, 1)
    assert minted == (ETH // 20) * 200
    assert deployment.token.balance_of(BOB) == minted
    assert sale.current_round_id == 2


# --- Invariants ---

def test_total_raised_matches_contributions_at_every_step(sale, clock):
    sale.start_round(OWNER, 7, 0, clock.now + 60)
    for buyer, amount in [(ALICE, 3), (BOB, 5), (ALICE, 11), (CAROL, 1), (BOB, 2)]:
        sale.buy(buyer, amount)
        assert_totals_consistent(sale)
    assert sale.get_contribution(1, ALICE).contribution_wei == 14
    assert sale.get_contribution(1, ALICE).entitlement_tokens == 14 * 7


def test_finalize_twice_rejects_and_keeps_outcome(sale, clock):
    sale.start_round(OWNER, 200, ETH, clock.now + 60)
    sale.buy(ALICE, ETH // 100)
    clock.advance(61)
    sale.finalize(OWNER)

    sale.set_round_metadata(OWNER, 1, "Seed", "still failed")
    for _ in range(2):
        with pytest.raises(PhaseError):
            sale.finalize(OWNER)
    rnd = sale.get_round()
    assert rnd.finalized is True
    assert rnd.successful is False


def test_finalize_before_end_time_rejects(sale, clock):
    sale.start_round(OWNER, 200, 0, clock.now + 60)
    clock.advance(59)
    with pytest.raises(PhaseError):
        sale.finalize(OWNER)
    assert sale.get_round().finalized is False
    clock.advance(1)
    assert sale.finalize(OWNER).successful is True


def test_claim_and_refund_are_mutually_exclusive(sale, clock):
    run_successful_round(sale, clock)
    with pytest.raises(PhaseError):
        sale.refund(ALICE)
    sale.claim(ALICE)
    with pytest.raises(PhaseError):
        sale.refund(ALICE)


# --- Rejections ---

def test_buy_rejections_leave_no_trace(deployment, sale, clock):
    with pytest.raises(PhaseError):
        sale.buy(ALICE, ETH)

    sale.start_round(OWNER, 200, ETH, clock.now + 60)
    with pytest.raises(ZeroValueError):
        sale.buy(ALICE, 0)
    with pytest.raises(InsufficientFundsError):
        sale.buy(ALICE, 11 * ETH)

    clock.advance(60)
    with pytest.raises(InactiveRoundError):
        sale.buy(ALICE, ETH)

    assert sale.get_round().total_raised == 0
    assert sale.get_contribution(1, ALICE).contribution_wei == 0
    assert deployment.events.of_type(Bought) == []
    assert sale.sale_balance == 0


def test_buy_after_finalize_rejects(sale, clock):
    run_successful_round(sale, clock)
    with pytest.raises(InactiveRoundError):
        sale.buy(CAROL, 1)


def test_admin_operations_require_owner(sale, clock):
    with pytest.raises(AuthorizationError):
        sale.start_round(ALICE, 200, ETH, clock.now + 60)

    sale.start_round(OWNER, 200, 0, clock.now + 60)
    sale.buy(ALICE, ETH)
    clock.advance(61)
    with pytest.raises(AuthorizationError):
        sale.finalize(ALICE)
    sale.finalize(OWNER)
    with pytest.raises(AuthorizationError):
        sale.withdraw(ALICE)
    with pytest.raises(AuthorizationError):
        sale.set_round_metadata(BOB, 1, "x", "y")
    with pytest.raises(AuthorizationError):
        sale.set_treasury(BOB, BOB)


@pytest.mark.parametrize(
    "rate, soft_cap, end_offset",
    [(0, ETH, 60), (-1, ETH, 60), (200, -1, 60), (200, ETH, 0), (200, ETH, -10)],
)
def test_start_round_validation(sale, clock, rate, soft_cap, end_offset):
    with pytest.raises(ValidationError):
        sale.start_round(OWNER, rate, soft_cap, clock.now + end_offset)
    assert sale.current_round_id == 0


def test_claim_rejections(sale, clock):
    sale.start_round(OWNER, 200, 0, clock.now + 60)
    sale.buy(ALICE, ETH)
    with pytest.raises(PhaseError):
        sale.claim(ALICE)
    clock.advance(61)
    sale.finalize(OWNER)
    with pytest.raises(ZeroValueError):
        sale.claim(CAROL)
    with pytest.raises(UnknownRoundError):
        sale.claim(ALICE, 7)


def test_refund_without_contribution_rejects(sale, clock):
    sale.start_round(OWNER, 200, ETH, clock.now + 60)
    sale.buy(ALICE, 1)
    clock.advance(61)
    sale.finalize(OWNER)
    with pytest.raises(ZeroValueError):
        sale.refund(BOB)


def test_withdraw_rejections(sale, clock):
    sale.start_round(OWNER, 200, ETH, clock.now + 60)
    sale.buy(ALICE, 1)
    with pytest.raises(PhaseError):
        sale.withdraw(OWNER)
    clock.advance(61)
    sale.finalize(OWNER)
    with pytest.raises(PhaseError):
        sale.withdraw(OWNER)


def test_withdraw_twice_rejects(sale, clock, bank):
    run_successful_round(sale, clock)
    sale.withdraw(OWNER)
    balance = bank.balance_of(TREASURY)
    with pytest.raises(DoubleResolutionError):
        sale.withdraw(OWNER)
    assert bank.balance_of(TREASURY) == balance


# --- External legs ---

def test_reentrant_refund_is_rejected(sale, clock, bank):
    sale.start_round(OWNER, 200, ETH, clock.now + 60)
    sale.buy(ALICE, ETH // 100)
    sale.buy(BOB, ETH // 100)
    clock.advance(61)
    sale.finalize(OWNER)

    reentry_errors = []

    def reenter(sender, amount):
        try:
            sale.refund(ALICE)
        except DoubleResolutionError as e:
            reentry_errors.append(e)

    bank.register_receiver(ALICE, reenter)
    before = bank.balance_of(ALICE)
    sale.refund(ALICE)

    assert len(reentry_errors) == 1
    assert bank.balance_of(ALICE) == before + ETH // 100
    assert sale.sale_balance == ETH // 100


def test_failed_refund_payout_is_reverted_and_retryable(sale, clock, bank):
    sale.start_round(OWNER, 200, ETH, clock.now + 60)
    sale.buy(ALICE, ETH // 100)
    clock.advance(61)
    sale.finalize(OWNER)

    def reject(sender, amount):
        raise RuntimeError("receiver refuses payments")

    bank.register_receiver(ALICE, reject)
    before = bank.balance_of(ALICE)
    with pytest.raises(TransactionFailedError):
        sale.refund(ALICE)
    assert sale.get_contribution(1, ALICE).claimed_or_refunded is False
    assert bank.balance_of(ALICE) == before
    assert sale.sale_balance == ETH // 100

    bank.register_receiver(ALICE, None)
    assert sale.refund(ALICE) == ETH // 100
    assert sale.sale_balance == 0


def test_claim_without_minter_role_is_reverted(bank, clock):
    deployment = deploy_sale(owner=OWNER, treasury=TREASURY, sale_address=SALE, bank=bank, clock=clock, grant_minter=False)
    sale = deployment.sale
    run_successful_round(sale, clock)

    with pytest.raises(TransactionFailedError):
        sale.claim(ALICE)
    assert sale.get_contribution(1, ALICE).claimed_or_refunded is False
    assert deployment.token.balance_of(ALICE) == 0

    deployment.token.grant_role(OWNER, Role.minter, SALE)
    assert sale.claim(ALICE) == (ETH // 20) * 200


def test_failed_withdrawal_is_reverted(sale, clock, bank):
    run_successful_round(sale, clock)

    def reject(sender, amount):
        raise RuntimeError("treasury offline")

    bank.register_receiver(TREASURY, reject)
    with pytest.raises(TransactionFailedError):
        sale.withdraw(OWNER)
    assert sale.get_round().funds_withdrawn is False

    bank.register_receiver(TREASURY, None)
    assert sale.withdraw(OWNER) == ETH // 10


# --- Admin corrections and events ---

def test_set_end_time_extends_an_open_round(sale, clock):
    sale.start_round(OWNER, 200, 0, clock.now + 60)
    clock.advance(90)
    with pytest.raises(InactiveRoundError):
        sale.buy(ALICE, 1)

    sale.set_end_time(OWNER, clock.now + 60)
    sale.buy(ALICE, 1)
    assert sale.get_round().total_raised == 1


def test_set_end_time_on_finalized_round_rejects(sale, clock):
    sale.start_round(OWNER, 200, 0, clock.now + 60)
    clock.advance(61)
    sale.finalize(OWNER)
    with pytest.raises(PhaseError):
        sale.set_end_time(OWNER, clock.now + 600)
    assert sale.get_round().end_time == START_TIME + 60


def test_set_round_metadata_emits_event(deployment, sale, clock):
    sale.start_round(OWNER, 200, 0, clock.now + 60, "Seed", "")
    rnd = sale.set_round_metadata(OWNER, 1, "Seed round", "Early backers")
    assert rnd.title == "Seed round"
    assert sale.get_round(1).description == "Early backers"
    updates = deployment.events.of_type(RoundMetadataUpdated)
    assert [(e.round_id, e.title) for e in updates] == [(1, "Seed round")]


def test_event_stream_records_lifecycle(deployment, sale, clock):
    sale.start_round(OWNER, 200, ETH // 10, clock.now + 60, "Seed", "First")
    sale.buy(ALICE, ETH // 20)
    sale.buy(ALICE, ETH // 20)
    clock.advance(61)
    sale.finalize(OWNER)

    started = deployment.events.of_type(RoundStarted)
    assert started[0].model_dump(include={"round_id", "rate", "soft_cap_wei", "title"}) == {
        "round_id": 1,
        "rate": 200,
        "soft_cap_wei": ETH // 10,
        "title": "Seed",
    }
    bought = deployment.events.of_type(Bought)
    assert [(e.buyer, e.wei_amount, e.token_amount) for e in bought] == [(ALICE, ETH // 20, ETH // 20 * 200)] * 2
    assert deployment.events.of_type(Finalized)[0].successful is True
    assert [e.sequence for e in deployment.events] == list(range(1, len(deployment.events) + 1))


def test_transfer_ownership(sale, clock):
    sale.transfer_ownership(OWNER, CAROL)
    assert sale.owner == CAROL
    with pytest.raises(AuthorizationError):
        sale.start_round(OWNER, 200, 0, clock.now + 60)
    assert sale.start_round(CAROL, 200, 0, clock.now + 60).round_id == 1


def test_set_treasury_redirects_withdrawals(sale, clock, bank):
    run_successful_round(sale, clock)
    sale.set_treasury(OWNER, CAROL)
    before = bank.balance_of(CAROL)
    sale.withdraw(OWNER)
    assert bank.balance_of(CAROL) == before + ETH // 10


def test_addresses_are_normalised(sale, clock):
    sale.start_round(OWNER.upper().replace("0X", "0x"), 200, 0, clock.now + 60)
    sale.buy(ALICE.upper().replace("0X", "0x"), 5)
    assert sale.get_contribution(1, ALICE).contribution_wei == 5
    with pytest.raises(ValidationError):
        sale.buy("not-an-address", 5)


def test_sale_state_and_round_view(sale, clock):
    state = sale.sale_state()
    assert state.current_round_id == 0
    assert state.current_round is None

    sale.start_round(OWNER, 200, 0, clock.now + 60)
    sale.buy(BOB, 9)
    state = sale.sale_state()
    assert state.owner == OWNER
    assert state.treasury == TREASURY
    assert state.sale_balance_wei == 9
    assert state.implementation_version == "v1"
    assert state.current_round.round_id == 1

    view = sale.round_view(1, BOB)
    assert view.contribution.entitlement_tokens == 9 * 200
    assert sale.round_view(1).account is None


def test_returned_rounds_are_copies(sale, clock):
    sale.start_round(OWNER, 200, 0, clock.now + 60)
    rnd = sale.get_round()
    rnd.finalized = True
    assert sale.get_round().finalized is False


def test_sale_cannot_contribute_to_itself(sale, clock):
    sale.start_round(OWNER, 200, 0, clock.now + 60)
    sale.buy(ALICE, ETH)

    with pytest.raises(ValidationError):
        sale.buy(SALE, ETH)
    assert sale.get_round().total_raised == sale.sale_balance == ETH
    assert sale.get_contribution(1, SALE).contribution_wei == 0

    clock.advance(61)
    sale.finalize(OWNER)
    assert sale.withdraw(OWNER) == ETH
    assert sale.start_round(OWNER, 200, 0, clock.now + 60).round_id == 2


def test_treasury_cannot_be_the_sale(sale, bank, clock):
    with pytest.raises(ValidationError):
        sale.set_treasury(OWNER, SALE)
    assert sale.treasury == TREASURY
    with pytest.raises(ValidationError):
        deploy_sale(owner=OWNER, treasury=SALE, sale_address=SALE, bank=bank, clock=clock)


def test_state_changes_from_receiver_hook_are_rejected(sale, clock, bank):
    bank.credit(OWNER, ETH)
    sale.start_round(OWNER, 200, ETH, clock.now + 60)
    sale.buy(OWNER, ETH // 100)
    clock.advance(61)
    sale.finalize(OWNER)

    seen = []

    def start_next_round_then_fail(sender, amount):
        for attempt in (
            lambda: sale.start_round(OWNER, 300, 0, clock.now + 60),
            lambda: sale.set_treasury(OWNER, CAROL),
            lambda: sale.buy(OWNER, 1),
        ):
            try:
                attempt()
            except ReentrantCallError as e:
                seen.append(e)
        raise RuntimeError("refuse refund")

    bank.register_receiver(OWNER, start_next_round_then_fail)
    with pytest.raises(TransactionFailedError):
        sale.refund(OWNER)

    assert len(seen) == 3
    assert sale.current_round_id == 1
    assert sale.treasury == TREASURY
    assert sale.get_contribution(1, OWNER).claimed_or_refunded is False
    assert sale.sale_balance == ETH // 100

    bank.register_receiver(OWNER, None)
    assert sale.refund(OWNER) == ETH // 100
    assert sale.start_round(OWNER, 300, 0, clock.now + 60).round_id == 2


def test_guard_is_released_after_failed_mint(bank, clock):
    deployment = deploy_sale(owner=OWNER, treasury=TREASURY, sale_address=SALE, bank=bank, clock=clock, grant_minter=False)
    sale = deployment.sale
    run_successful_round(sale, clock)
    with pytest.raises(TransactionFailedError):
        sale.claim(ALICE)
    sale.set_round_metadata(OWNER, 1, "Seed", "minter granted late")
    assert sale.withdraw(OWNER) == ETH // 10

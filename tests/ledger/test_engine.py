"""Tests for round lifecycle, deposits and access control on the ledger engine."""

import pytest

from parimutuel.ledger.engine import ParimutuelLedger
from parimutuel.ledger.errors import (
    AlreadySettled,
    InvalidFeeRate,
    PrecedingRoundNotSettled,
    RoundClosed,
    SideMismatch,
    TransferFailed,
    Unauthorized,
    UnknownRound,
    ZeroAmount,
)
from parimutuel.ledger.models import SCALE, LedgerState, Side
from parimutuel.ledger.transport import NativeTransport

OPERATOR = "operator_hk"


@pytest.fixture
def transport():
    t = NativeTransport()
    for account in ("alice", "bob", "carol"):
        t.mint(account, 10_000)
    return t


@pytest.fixture
def ledger(transport):
    return ParimutuelLedger(operator=OPERATOR, fee_rate_bps=500, transport=transport)


class TestConstruction:

    def test_round_one_open_at_creation(self, ledger):
        assert ledger.current_round == 1
        rnd = ledger.get_round(1)
        assert rnd.betting_open
        assert not rnd.settled
        assert rnd.payout_ratio is None

    @pytest.mark.parametrize("bps", [-1, 10_001])
    def test_invalid_fee_rate_rejected(self, transport, bps):
        with pytest.raises(InvalidFeeRate):
            ParimutuelLedger(operator=OPERATOR, fee_rate_bps=bps, transport=transport)

    def test_boundary_fee_rates_accepted(self, transport):
        assert ParimutuelLedger(OPERATOR, 0, transport).fee_rate_bps == 0
        assert ParimutuelLedger(OPERATOR, 10_000, transport).fee_rate_bps == 10_000

    def test_restored_state_must_match_config(self, transport):
        state = LedgerState(operator=OPERATOR, fee_rate_bps=500)
        with pytest.raises(ValueError):
            ParimutuelLedger(operator="someone_else", fee_rate_bps=500, transport=transport, state=state)

    def test_from_state_keeps_progress(self, ledger, transport):
        ledger.deposit("alice", Side.A, 100)
        restored = ParimutuelLedger.from_state(ledger.snapshot(), transport)
        assert restored.get_stake(1, "alice").net_amount == 95
        assert restored.operator == OPERATOR

    def test_unknown_round(self, ledger):
        with pytest.raises(UnknownRound):
            ledger.get_round(2)


class TestDeposit:

    def test_fee_split_and_pools(self, ledger, transport):
        receipt = ledger.deposit("alice", Side.A, 100)
        assert (receipt.fee, receipt.net) == (5, 95)
        assert receipt.round_id == 1

        rnd = ledger.get_round(1)
        assert rnd.total_staked_a == 95
        assert rnd.total_staked_b == 0
        assert rnd.total_fees == 5

        stake = ledger.get_stake(1, "alice")
        assert stake.net_amount == 95
        assert stake.side == Side.A
        assert stake.has_participated
        assert not stake.claimed

        assert transport.balance_of("alice") == 9_900
        assert transport.custody_balance == 100

    def test_repeat_deposits_accumulate(self, ledger):
        ledger.deposit("alice", Side.A, 100)
        ledger.deposit("alice", "A", 200)
        assert ledger.get_stake(1, "alice").net_amount == 95 + 190
        assert ledger.get_round(1).total_fees == 15

    def test_zero_amount_rejected(self, ledger):
        with pytest.raises(ZeroAmount):
            ledger.deposit("alice", Side.A, 0)
        assert ledger.get_round(1).total_staked_a == 0

    def test_negative_amount_rejected(self, ledger):
        with pytest.raises(ZeroAmount):
            ledger.deposit("alice", Side.A, -5)

    def test_side_switch_rejected(self, ledger, transport):
        ledger.deposit("alice", Side.A, 100)
        with pytest.raises(SideMismatch):
            ledger.deposit("alice", Side.B, 100)
        assert ledger.get_round(1).total_staked_b == 0
        assert transport.balance_of("alice") == 9_900

    def test_side_is_per_round(self, ledger):
        ledger.deposit("alice", Side.A, 100)
        ledger.settle_bet(OPERATOR, Side.A)
        ledger.start_new_round(OPERATOR)
        receipt = ledger.deposit("alice", Side.B, 100)
        assert receipt.round_id == 2
        assert ledger.get_stake(2, "alice").side == Side.B

    def test_closed_round_rejects_deposit(self, ledger):
        ledger.close_betting(OPERATOR)
        with pytest.raises(RoundClosed):
            ledger.deposit("alice", Side.A, 100)

    def test_settled_round_rejects_deposit(self, ledger):
        ledger.settle_bet(OPERATOR, Side.A)
        with pytest.raises(RoundClosed):
            ledger.deposit("alice", Side.A, 100)

    def test_transport_refusal_books_nothing(self, ledger):
        with pytest.raises(TransferFailed):
            ledger.deposit("dave", Side.A, 100)
        assert ledger.get_stake(1, "dave").net_amount == 0
        assert ledger.get_round(1).total_fees == 0

    def test_full_fee_rate_leaves_zero_stake(self, transport):
        ledger = ParimutuelLedger(OPERATOR, 10_000, transport)
        receipt = ledger.deposit("alice", Side.A, 100)
        assert (receipt.fee, receipt.net) == (100, 0)
        # A zero stake does not lock the side
        ledger.deposit("alice", Side.B, 100)


class TestRoundLifecycle:

    def test_close_is_idempotent(self, ledger):
        assert ledger.close_betting(OPERATOR) == 1
        assert ledger.close_betting(OPERATOR) == 1
        assert not ledger.get_round(1).betting_open

    def test_settle_records_ratio(self, ledger):
        ledger.deposit("alice", Side.A, 100)
        ledger.deposit("bob", Side.B, 100)
        ledger.close_betting(OPERATOR)
        result = ledger.settle_bet(OPERATOR, Side.A)

        assert result.round_id == 1
        assert result.winning_side == Side.A
        assert result.payout_ratio == 2 * SCALE

        rnd = ledger.get_round(1)
        assert rnd.settled
        assert rnd.winning_side == Side.A
        assert ledger.payout_ratio(1) == 2 * SCALE

    def test_settle_without_close_closes_betting(self, ledger):
        ledger.settle_bet(OPERATOR, Side.B)
        assert not ledger.get_round(1).betting_open

    def test_double_settle_rejected(self, ledger):
        ledger.settle_bet(OPERATOR, Side.A)
        with pytest.raises(AlreadySettled):
            ledger.settle_bet(OPERATOR, Side.B)
        assert ledger.get_round(1).winning_side == Side.A

    def test_new_round_requires_settlement(self, ledger):
        with pytest.raises(PrecedingRoundNotSettled):
            ledger.start_new_round(OPERATOR)
        ledger.close_betting(OPERATOR)
        with pytest.raises(PrecedingRoundNotSettled):
            ledger.start_new_round(OPERATOR)
        assert ledger.current_round == 1

    def test_rounds_advance_by_one(self, ledger):
        for expected in (2, 3, 4):
            ledger.settle_bet(OPERATOR, Side.A)
            assert ledger.start_new_round(OPERATOR) == expected
            assert ledger.current_round == expected
            assert ledger.get_round(expected).betting_open

    def test_empty_round_settles_neutral(self, ledger):
        result = ledger.settle_bet(OPERATOR, Side.A)
        assert result.payout_ratio == SCALE

    @pytest.mark.parametrize("operation", ["close_betting", "start_new_round", "withdraw_all_fees"])
    def test_operator_only(self, ledger, operation):
        with pytest.raises(Unauthorized):
            getattr(ledger, operation)("alice")

    def test_settle_operator_only(self, ledger):
        with pytest.raises(Unauthorized):
            ledger.settle_bet("alice", Side.A)
        assert not ledger.get_round(1).settled


class TestQueries:

    def test_returned_records_are_copies(self, ledger):
        ledger.deposit("alice", Side.A, 100)
        rnd = ledger.get_round(1)
        rnd.total_staked_a = 0
        stake = ledger.get_stake(1, "alice")
        stake.net_amount = 0
        assert ledger.get_round(1).total_staked_a == 95
        assert ledger.get_stake(1, "alice").net_amount == 95

    def test_missing_stake_is_empty(self, ledger):
        stake = ledger.get_stake(1, "nobody")
        assert stake.net_amount == 0
        assert not stake.has_participated
        assert not ledger.has_claimed(1, "nobody")

    def test_snapshot_is_detached(self, ledger):
        ledger.deposit("alice", Side.A, 100)
        state = ledger.snapshot()
        ledger.deposit("alice", Side.A, 100)
        assert state.stakes[1]["alice"].net_amount == 95

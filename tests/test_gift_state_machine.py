"""
Gift State Machine Tests
Allowed transitions and conditional status writes that never regress a gift
"""

import pytest

from database import managed_session
from models import Gift, GiftStatus, utcnow
from utils.exceptions import InvalidStateTransition
from utils.gift_state_machine import GiftStateValidator, transition_gift

TERMINAL = [
    GiftStatus.CLAIMED.value,
    GiftStatus.EXPIRED.value,
    GiftStatus.EXPIRED_EMPTY.value,
    GiftStatus.EXPIRED_LOW_BALANCE.value,
    GiftStatus.REFUNDED.value,
]


class TestGiftStateValidator:

    def test_creation_starts_pending_payment(self):
        assert GiftStateValidator.is_valid_transition(None, GiftStatus.PENDING_PAYMENT.value)
        assert not GiftStateValidator.is_valid_transition(None, GiftStatus.SENT.value)

    def test_pending_payment_only_advances_to_sent(self):
        assert GiftStateValidator.is_valid_transition(GiftStatus.PENDING_PAYMENT.value, GiftStatus.SENT.value)
        assert not GiftStateValidator.is_valid_transition(GiftStatus.PENDING_PAYMENT.value, GiftStatus.CLAIMED.value)
        assert not GiftStateValidator.is_valid_transition(GiftStatus.PENDING_PAYMENT.value, GiftStatus.REFUNDED.value)

    @pytest.mark.parametrize("target", TERMINAL)
    def test_sent_reaches_every_terminal_state(self, target):
        assert GiftStateValidator.is_valid_transition(GiftStatus.SENT.value, target)

    @pytest.mark.parametrize("terminal", TERMINAL)
    def test_terminal_states_never_move(self, terminal):
        assert GiftStateValidator.is_terminal_state(terminal)
        for target in TERMINAL + [GiftStatus.SENT.value, GiftStatus.PENDING_PAYMENT.value]:
            assert not GiftStateValidator.is_valid_transition(terminal, target)

    def test_sent_is_not_terminal(self):
        assert not GiftStateValidator.is_terminal_state(GiftStatus.SENT.value)

    def test_validate_transition_raises_with_code(self):
        with pytest.raises(InvalidStateTransition) as exc_info:
            GiftStateValidator.validate_transition(GiftStatus.CLAIMED.value, GiftStatus.REFUNDED.value, "GF1")
        assert exc_info.value.code == "INVALID_STATE_TRANSITION"
        assert exc_info.value.details == {"from": "CLAIMED", "to": "REFUNDED"}


class TestConditionalTransitions:

    def test_transition_applies_once(self, session_factory, make_gift, load_gift):
        gift_id = make_gift(status=GiftStatus.PENDING_PAYMENT.value)

        with managed_session(session_factory) as session:
            assert transition_gift(session, gift_id, GiftStatus.PENDING_PAYMENT.value, GiftStatus.SENT.value)
        with managed_session(session_factory) as session:
            assert not transition_gift(session, gift_id, GiftStatus.PENDING_PAYMENT.value, GiftStatus.SENT.value)

        assert load_gift(gift_id).status == GiftStatus.SENT.value

    def test_refund_cannot_overwrite_claim(self, session_factory, make_gift, load_gift):
        gift_id = make_gift()
        now = utcnow()

        with managed_session(session_factory) as session:
            assert transition_gift(
                session, gift_id, GiftStatus.SENT.value, GiftStatus.CLAIMED.value,
                claimed_at=now, claimed_by="friend@example.com", claim_signature="claim-sig",
            )
        # A refund worker that read SENT earlier loses the race
        with managed_session(session_factory) as session:
            assert not transition_gift(
                session, gift_id, GiftStatus.SENT.value, GiftStatus.REFUNDED.value, refunded_at=now,
            )

        gift = load_gift(gift_id)
        assert gift.status == GiftStatus.CLAIMED.value
        assert gift.claimed_at is not None
        assert gift.refunded_at is None

    def test_forbidden_transition_never_reaches_the_database(self, session_factory, make_gift, load_gift):
        gift_id = make_gift(status=GiftStatus.REFUNDED.value)

        with pytest.raises(InvalidStateTransition):
            with managed_session(session_factory) as session:
                transition_gift(session, gift_id, GiftStatus.REFUNDED.value, GiftStatus.SENT.value)

        assert load_gift(gift_id).status == GiftStatus.REFUNDED.value

    def test_extra_values_written_with_status(self, session_factory, make_gift, load_gift):
        gift_id = make_gift()

        with managed_session(session_factory) as session:
            transition_gift(
                session, gift_id, GiftStatus.SENT.value, GiftStatus.EXPIRED.value,
                refund_error="Decryption failed",
            )

        gift = load_gift(gift_id)
        assert gift.status == GiftStatus.EXPIRED.value
        assert gift.refund_error == "Decryption failed"

    def test_unknown_gift_reports_no_change(self, session_factory):
        with managed_session(session_factory) as session:
            assert not transition_gift(session, "GF-MISSING", GiftStatus.SENT.value, GiftStatus.CLAIMED.value)
            assert session.get(Gift, "GF-MISSING") is None

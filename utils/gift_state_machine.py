"""
Gift State Machine with Conditional Updates
Transitions are applied as UPDATE ... WHERE status = <expected> so concurrent
workers can never regress a gift or overwrite a different terminal state.
"""

import logging
from typing import Any, Dict, Optional, Set

from sqlalchemy import update
from sqlalchemy.orm import Session

from models import Gift, GiftStatus
from utils.exceptions import InvalidStateTransition

logger = logging.getLogger(__name__)


class GiftStateValidator:
    """Validates gift status transitions"""

    VALID_TRANSITIONS: Dict[Optional[str], Set[str]] = {
        None: {GiftStatus.PENDING_PAYMENT.value},
        GiftStatus.PENDING_PAYMENT.value: {GiftStatus.SENT.value},
        GiftStatus.SENT.value: {
            GiftStatus.CLAIMED.value,
            GiftStatus.EXPIRED.value,
            GiftStatus.EXPIRED_EMPTY.value,
            GiftStatus.EXPIRED_LOW_BALANCE.value,
            GiftStatus.REFUNDED.value,
        },
        GiftStatus.CLAIMED.value: set(),
        GiftStatus.EXPIRED.value: set(),
        GiftStatus.EXPIRED_EMPTY.value: set(),
        GiftStatus.EXPIRED_LOW_BALANCE.value: set(),
        GiftStatus.REFUNDED.value: set(),
    }

    @classmethod
    def is_valid_transition(cls, current_status: Optional[str], new_status: str) -> bool:
        return new_status in cls.VALID_TRANSITIONS.get(current_status, set())

    @classmethod
    def is_terminal_state(cls, status: str) -> bool:
        return status in cls.VALID_TRANSITIONS and not cls.VALID_TRANSITIONS[status]

    @classmethod
    def validate_transition(cls, current_status: Optional[str], new_status: str, gift_id: str = "") -> None:
        if not cls.is_valid_transition(current_status, new_status):
            logger.error(f"❌ INVALID_GIFT_TRANSITION: {gift_id} {current_status} -> {new_status}")
            raise InvalidStateTransition(
                f"Gift {gift_id} cannot move from {current_status} to {new_status}",
                details={"from": current_status, "to": new_status},
            )


def transition_gift(
    session: Session,
    gift_id: str,
    from_status: str,
    to_status: str,
    **values: Any,
) -> bool:
    """
    Move a gift from from_status to to_status, writing any extra column values
    in the same statement.

    Returns True when this call performed the transition, False when the gift was
    no longer in from_status (another worker won, or it already advanced).
    Raises InvalidStateTransition for transitions the lifecycle forbids.
    """
    GiftStateValidator.validate_transition(from_status, to_status, gift_id)

    stmt = (
        update(Gift)
        .where(Gift.id == gift_id, Gift.status == from_status)
        .values(status=to_status, **values)
        .execution_options(synchronize_session=False)
    )
    result = session.execute(stmt)
    changed = result.rowcount == 1

    if changed:
        logger.info(f"✅ GIFT_TRANSITION: {gift_id} {from_status} -> {to_status}")
    else:
        logger.warning(f"⚠️ GIFT_TRANSITION_SKIPPED: {gift_id} not in {from_status} (wanted {to_status})")
    return changed

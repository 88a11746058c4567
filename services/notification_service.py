"""
Gift notification collaborator
Delivery (email rendering, transport) lives outside the core. The core only calls
these hooks, and always best-effort: a failed notification never undoes a transfer.
"""

import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class GiftNotifier(ABC):
    """Outbound gift and refund notifications"""

    @abstractmethod
    async def gift_sent(self, recipient_contact: str, sender_contact: str, claim_token: str, summary: Dict[str, Any]) -> None:
        """Recipient learns a gift is waiting behind the claim link"""

    @abstractmethod
    async def gift_refunded(
        self,
        sender_contact: str,
        gift_id: str,
        refunded_amount: Optional[Decimal],
        signature: Optional[str],
        partial: bool = False,
    ) -> None:
        """Sender learns an unclaimed gift came back, possibly only in part"""


class LoggingGiftNotifier(GiftNotifier):
    """Default notifier that records notifications in the log only"""

    async def gift_sent(self, recipient_contact, sender_contact, claim_token, summary):
        # Claim tokens are bearer secrets; log a prefix only
        logger.info(f"📧 GIFT_SENT_NOTIFICATION: to={recipient_contact} token={claim_token[:8]}...")

    async def gift_refunded(self, sender_contact, gift_id, refunded_amount, signature, partial=False):
        logger.info(
            f"📧 GIFT_REFUND_NOTIFICATION: to={sender_contact} gift={gift_id} "
            f"amount={refunded_amount} partial={partial}"
        )


async def notify_best_effort(coro, description: str) -> bool:
    """Await a notification coroutine, logging instead of raising on failure"""
    try:
        await coro
        return True
    except Exception as e:
        logger.warning(f"⚠️ NOTIFICATION_FAILED: {description}: {e}")
        return False

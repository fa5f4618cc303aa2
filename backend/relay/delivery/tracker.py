"""Per-recipient delivery tracking.

Every message carries one DeliveryRecord per recipient, created once when
the message is built. Records only move forward (sent -> delivered -> seen)
and the message's aggregate status is always the lowest-ranked record.

Promotions are set-updates in the store: a recipient already at or past the
target state is skipped, so repeated or reordered promotions converge on the
same state. A "seen" that arrives before "delivered" satisfies both.
"""
import logging
from datetime import datetime
from typing import Iterable, List, Optional

from relay.store.schemas import DeliveryRecord, DeliveryState, Message, utc_now
from relay.store.service import MessageStore

logger = logging.getLogger(__name__)


def aggregate_status(records: List[DeliveryRecord]) -> DeliveryState:
    """Lowest-ranked status among ``records``.

    A message without recipients stays "sent": there is nobody to deliver it to.
    """
    if not records:
        return DeliveryState.SENT
    return min((r.status for r in records), key=lambda s: s.rank)


class DeliveryTracker:
    """Creates delivery records and applies status promotions."""

    def __init__(self, store: MessageStore):
        self.store = store

    def initialize(self, message: Message, recipients: Iterable[str]) -> List[DeliveryRecord]:
        """Attach one "sent" record per recipient to a message not yet persisted.

        Called exactly once per message, before it is appended and fanned out.
        """
        if message.deliveryStatus:
            raise ValueError(f"Delivery records already initialized for {message.id}")
        records = [
            DeliveryRecord(userId=recipient_id, status=DeliveryState.SENT)
            for recipient_id in dict.fromkeys(recipients)
            if recipient_id != message.senderId
        ]
        message.deliveryStatus = records
        message.status = DeliveryState.SENT
        return records

    def promote_delivered(
        self,
        message_id: str,
        recipient_ids: Iterable[str],
        at: Optional[datetime] = None,
    ) -> List[str]:
        """Move the named recipients from "sent" to "delivered".

        Recipients already delivered or seen are left untouched.

        Returns:
            Recipient ids whose record changed.
        """
        changed = self.store.update_delivery_status(
            message_id, recipient_ids, DeliveryState.DELIVERED, at or utc_now()
        )
        if changed:
            logger.debug("[Delivery] %s delivered to %s", message_id, changed)
            self.recompute_aggregate_status(message_id)
        return changed

    def promote_seen(
        self,
        message_id: str,
        recipient_id: str,
        at: Optional[datetime] = None,
    ) -> bool:
        """Move one recipient's record to "seen". Idempotent under replay.

        Returns:
            True if the record changed.
        """
        changed = self.store.update_delivery_status(
            message_id, [recipient_id], DeliveryState.SEEN, at or utc_now()
        )
        if changed:
            logger.debug("[Delivery] %s seen by %s", message_id, recipient_id)
            self.recompute_aggregate_status(message_id)
        return bool(changed)

    def recompute_aggregate_status(self, message_or_id) -> DeliveryState:
        """Recompute the aggregate from stored records and persist it if it moved.

        Accepts a Message or a message id; a Message passed in has its
        ``status`` and ``deliveryStatus`` refreshed in place.
        """
        if isinstance(message_or_id, Message):
            message_id = message_or_id.id
        else:
            message_id = message_or_id

        records = self.store.get_delivery_records(message_id)
        status = aggregate_status(records)

        current = self.store.get_aggregate_status(message_id)
        if current is not None and current != status:
            self.store.update_aggregate_status(message_id, status)
            logger.debug("[Delivery] %s aggregate %s -> %s", message_id, current.value, status.value)

        if isinstance(message_or_id, Message):
            message_or_id.deliveryStatus = records
            message_or_id.status = status
        return status

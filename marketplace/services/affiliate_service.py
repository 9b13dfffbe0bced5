"""Affiliate commission bookkeeping driven by order domain events."""

import logging
from collections import defaultdict
from collections.abc import Callable
from decimal import ROUND_HALF_UP, Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketplace.models.affiliate import Affiliate, AffiliateCommission, AffiliateStatus, CommissionStatus
from marketplace.services.side_effects import DomainEvent, EventBus, EventType

logger = logging.getLogger(__name__)

REVERSIBLE = (CommissionStatus.PENDING, CommissionStatus.APPROVED)


def commission_for(sale_amount: Decimal, rate: Decimal) -> Decimal:
    return (Decimal(sale_amount) * Decimal(rate) / 100).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


class AffiliateService:
    """Creates and reverses commissions for referred orders."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def create_commissions_for_order(
        self,
        order_id: UUID,
        buyer_id: UUID,
        affiliate_code: str,
        items: list[dict[str, Any]],
    ) -> int:
        """Book one pending commission per order item.

        Args:
            order_id: Completed order.
            buyer_id: Buyer, compared against the affiliate to block self-referral.
            affiliate_code: Code carried through checkout metadata.
            items: Order items with ``order_item_id``, ``price`` and ``currency``.

        Returns:
            int: Number of commissions created.
        """
        affiliate = self.db.scalars(select(Affiliate).where(Affiliate.code == affiliate_code)).first()
        if affiliate is None or affiliate.status != AffiliateStatus.ACTIVE:
            logger.info("Affiliate %s unknown or not active, no commission for order %s", affiliate_code, order_id)
            return 0
        if affiliate.user_id == buyer_id:
            logger.warning("Self-referral detected: user %s is affiliate %s", buyer_id, affiliate.id)
            return 0

        total = Decimal("0")
        for item in items:
            sale_amount = Decimal(str(item["price"]))
            amount = commission_for(sale_amount, affiliate.commission_rate)
            total += amount
            self.db.add(
                AffiliateCommission(
                    affiliate_id=affiliate.id,
                    order_id=order_id,
                    order_item_id=UUID(str(item["order_item_id"])),
                    sale_amount=sale_amount,
                    commission_amount=amount,
                    currency=item.get("currency") or "USD",
                    status=CommissionStatus.PENDING,
                )
            )
        self.db.execute(
            update(Affiliate)
            .where(Affiliate.id == affiliate.id)
            .values(pending_balance=Affiliate.pending_balance + total)
            .execution_options(synchronize_session=False)
        )
        try:
            self.db.commit()
        except IntegrityError:
            # Handler re-run for an order that already has commissions
            self.db.rollback()
            logger.info("Commissions already booked for order %s", order_id)
            return 0

        logger.info("Created %d commissions for order %s, affiliate %s", len(items), order_id, affiliate.code)
        return len(items)

    def reverse_commissions_for_order(self, order_id: UUID) -> int:
        """Reverse pending and approved commissions of a refunded order.

        Pending balances are reduced by the reversed amounts but never below zero.

        Returns:
            int: Number of commissions reversed.
        """
        commissions = list(
            self.db.scalars(
                select(AffiliateCommission).where(
                    AffiliateCommission.order_id == order_id,
                    AffiliateCommission.status.in_(REVERSIBLE),
                )
            )
        )
        if not commissions:
            return 0

        per_affiliate: dict[UUID, Decimal] = defaultdict(Decimal)
        for commission in commissions:
            per_affiliate[commission.affiliate_id] += commission.commission_amount

        self.db.execute(
            update(AffiliateCommission)
            .where(AffiliateCommission.id.in_([c.id for c in commissions]))
            .values(status=CommissionStatus.REVERSED)
            .execution_options(synchronize_session=False)
        )
        for affiliate_id, amount in per_affiliate.items():
            # Decremented in SQL so a stale Affiliate in the session cannot undo it
            self.db.execute(
                update(Affiliate)
                .where(Affiliate.id == affiliate_id)
                .values(
                    pending_balance=case(
                        (Affiliate.pending_balance > amount, Affiliate.pending_balance - amount),
                        else_=Decimal("0"),
                    )
                )
                .execution_options(synchronize_session=False)
            )
        self.db.commit()

        logger.info("Reversed %d commissions for order %s", len(commissions), order_id)
        return len(commissions)


def register_affiliate_handlers(bus: EventBus, session_factory: Callable[[], Session]) -> None:
    """Subscribe commission bookkeeping to order events.

    Each handler opens its own session; the request session has already
    committed the order by the time events are published.
    """

    def on_order_completed(event: DomainEvent) -> None:
        code = event.payload.get("affiliate_ref")
        if not code:
            return
        with session_factory() as db:
            AffiliateService(db).create_commissions_for_order(
                order_id=UUID(event.payload["order_id"]),
                buyer_id=UUID(event.payload["user_id"]),
                affiliate_code=code,
                items=event.payload.get("items", []),
            )

    def on_order_refunded(event: DomainEvent) -> None:
        with session_factory() as db:
            AffiliateService(db).reverse_commissions_for_order(UUID(event.payload["order_id"]))

    bus.subscribe(EventType.ORDER_COMPLETED, on_order_completed, name="affiliate.create_commissions")
    bus.subscribe(EventType.ORDER_REFUNDED, on_order_refunded, name="affiliate.reverse_commissions")

"""Installment plans: split a payable amount into monthly dues.

``split_amount``, ``build_plan`` and ``due_notices`` are pure. ``InstallmentService``
adds persistence, payment marking, overdue detection and customer notices.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_CEILING, Decimal
from typing import Optional

from core.resilience.locks import KeyedLock
from engine.config import InstallmentConfig
from engine.errors import InvalidPlanType, NotFound, ValidationError
from engine.models import (
    NOTICE_OVERDUE,
    NOTICE_REMINDER,
    Installment,
    InstallmentPlan,
    InstallmentStatus,
    PlanStatus,
    ScheduledNotification,
    utcnow,
)
from engine.notifications import NotificationDispatcher
from engine.stores import InstallmentPlanStore
from engine.timeutils import add_months, ensure_utc

logger = logging.getLogger(__name__)


def split_amount(total: Decimal, parts: int) -> list[Decimal]:
    """Split ``total`` into ``parts`` whole-unit amounts that sum exactly.

    Each leading installment bills ``ceil(total / parts)`` while the remainder
    lasts; the trailing ones absorb the shortfall. 10000 over 3 gives
    [3334, 3333, 3333]; 10001 over 2 gives [5001, 5000].
    """
    if parts < 1:
        raise ValidationError("parts must be >= 1", parts=parts)
    total = Decimal(total)
    if total <= 0:
        raise ValidationError("total_amount must be positive", total_amount=str(total))

    if total < parts:
        raise ValidationError(
            f"total_amount {total} is too small for {parts} installments",
            total_amount=str(total),
            parts=parts,
        )

    per_installment = (total / parts).to_integral_value(rounding=ROUND_CEILING)
    base = total // parts
    remainder = total - base * parts
    leading = int(remainder.to_integral_value(rounding=ROUND_CEILING))
    amounts = [per_installment] * leading + [base] * (parts - leading)
    amounts[-1] = total - sum(amounts[:-1])
    return amounts


def build_plan(
    order_id: str,
    total_amount: Decimal,
    plan_type: str,
    now: Optional[datetime] = None,
    config: Optional[InstallmentConfig] = None,
) -> InstallmentPlan:
    """Build an unsaved plan with monthly due dates starting next month."""
    config = config or InstallmentConfig()
    parts = config.installments_for(plan_type)
    if parts is None:
        allowed = [name for name, _ in config.plan_types]
        raise InvalidPlanType(f"Invalid plan type {plan_type!r}. Allowed: {allowed}", plan_type=plan_type)

    now = ensure_utc(now or utcnow())
    amounts = split_amount(Decimal(total_amount), parts)
    installments = [
        Installment(sequence=i + 1, amount=amount, due_date=add_months(now, i + 1))
        for i, amount in enumerate(amounts)
    ]
    return InstallmentPlan(
        order_id=order_id,
        total_amount=Decimal(total_amount),
        installments=installments,
        created_at=now,
    )


# ---------------------------------------------------------------------------
# Reminders
# ---------------------------------------------------------------------------

def build_installment_reminders(
    plan: InstallmentPlan,
    config: Optional[InstallmentConfig] = None,
) -> list[ScheduledNotification]:
    """A reminder before and an overdue notice after each unpaid due date.

    Reminders are only scheduled while the installment is still pending.
    """
    config = config or InstallmentConfig()
    notices = []
    for inst in plan.installments:
        if inst.status == InstallmentStatus.PAID:
            continue
        due = inst.due_date.date().isoformat()
        if inst.status == InstallmentStatus.PENDING:
            notices.append(ScheduledNotification(
                kind=NOTICE_REMINDER,
                order_id=plan.order_id,
                installment_id=inst.id,
                send_at=inst.due_date - timedelta(days=config.reminder_days_before),
                message=f"Reminder: your installment of {inst.amount} is due on {due}.",
            ))
        notices.append(ScheduledNotification(
            kind=NOTICE_OVERDUE,
            order_id=plan.order_id,
            installment_id=inst.id,
            send_at=inst.due_date + timedelta(days=config.overdue_days_after),
            message=f"OVERDUE: your installment of {inst.amount} was due on {due}.",
        ))
    return notices


def due_notices(
    plan: InstallmentPlan,
    now: datetime,
    config: Optional[InstallmentConfig] = None,
) -> list[ScheduledNotification]:
    """Notices whose send time has come and that were not sent before."""
    now = ensure_utc(now)
    due = []
    for notice in build_installment_reminders(plan, config):
        if notice.send_at > now:
            continue
        inst = plan.find(notice.installment_id)
        sent = inst.reminder_sent if notice.kind == NOTICE_REMINDER else inst.overdue_notice_sent
        if not sent:
            due.append(notice)
    return due


@dataclass
class NotificationRun:
    marked_overdue: int = 0
    reminders: int = 0
    overdue_notices: int = 0
    plans_updated: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "marked_overdue": self.marked_overdue,
            "reminders": self.reminders,
            "overdue_notices": self.overdue_notices,
            "plans_updated": self.plans_updated,
        }


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class InstallmentService:
    def __init__(
        self,
        plans: InstallmentPlanStore,
        config: Optional[InstallmentConfig] = None,
        locks: Optional[KeyedLock] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
    ):
        self.plans = plans
        self.config = config or InstallmentConfig()
        self.locks = locks or KeyedLock("installment_plans")
        self.dispatcher = dispatcher or NotificationDispatcher()

    async def create_plan(
        self,
        order_id: str,
        total_amount: Decimal,
        plan_type: str,
        now: Optional[datetime] = None,
    ) -> InstallmentPlan:
        return await self.save_new_plan(self.build(order_id, total_amount, plan_type, now=now))

    def build(
        self,
        order_id: str,
        total_amount: Decimal,
        plan_type: str,
        now: Optional[datetime] = None,
    ) -> InstallmentPlan:
        """Validate and build a plan without saving it."""
        return build_plan(order_id, total_amount, plan_type, now=now, config=self.config)

    async def save_new_plan(self, plan: InstallmentPlan) -> InstallmentPlan:
        saved = await self.plans.save_plan(plan)
        logger.info(
            "Created plan %s for order %s: %s",
            saved.id, plan.order_id, [str(i.amount) for i in saved.installments],
        )
        return saved

    async def mark_paid(self, installment_id: str, paid_at: Optional[datetime] = None) -> InstallmentPlan:
        """Mark one installment paid; completes the plan once all are paid."""
        plan = await self.plans.find_plan_by_installment(installment_id)
        if plan is None:
            raise NotFound(f"Installment {installment_id} not found", installment_id=installment_id)

        async with self.locks.hold(plan.id):
            plan = await self.plans.get_plan(plan.id)
            installment = plan.find(installment_id)
            if installment.status == InstallmentStatus.PAID:
                return plan

            installment.status = InstallmentStatus.PAID
            installment.paid_at = ensure_utc(paid_at or utcnow())
            if plan.all_paid:
                plan.status = PlanStatus.COMPLETED
                logger.info("Plan %s for order %s completed", plan.id, plan.order_id)
            return await self.plans.save_plan(plan)

    async def mark_overdue(self, now: Optional[datetime] = None) -> int:
        """Flag pending installments past their due date. Returns how many changed."""
        now = ensure_utc(now or utcnow())
        changed = 0
        for plan in await self.plans.list_plans():
            if plan.status != PlanStatus.ACTIVE:
                continue
            async with self.locks.hold(plan.id):
                current = await self.plans.get_plan(plan.id)
                overdue = [
                    i for i in current.installments
                    if i.status == InstallmentStatus.PENDING and i.due_date < now
                ]
                for inst in overdue:
                    inst.status = InstallmentStatus.OVERDUE
                if overdue:
                    await self.plans.save_plan(current)
                    changed += len(overdue)
        return changed

    async def send_due_notices(self, now: Optional[datetime] = None) -> NotificationRun:
        """Flag overdue installments, then send every reminder that has come due.

        A notice handed to the dispatcher is recorded as sent on the plan; a
        delivery that keeps failing is parked in the dispatcher's DLQ.
        """
        now = ensure_utc(now or utcnow())
        run = NotificationRun(marked_overdue=await self.mark_overdue(now))
        for plan in await self.plans.list_plans():
            if plan.status != PlanStatus.ACTIVE:
                continue
            async with self.locks.hold(plan.id):
                current = await self.plans.get_plan(plan.id)
                notices = due_notices(current, now, self.config)
                if not notices:
                    continue
                for notice in notices:
                    self.dispatcher.dispatch_installment_notice(notice)
                    inst = current.find(notice.installment_id)
                    if notice.kind == NOTICE_REMINDER:
                        inst.reminder_sent = True
                        run.reminders += 1
                    else:
                        inst.overdue_notice_sent = True
                        run.overdue_notices += 1
                await self.plans.save_plan(current)
                run.plans_updated += 1
        logger.info("Installment notices: %s", run.to_dict())
        return run

    async def get_plan_for_order(self, order_id: str) -> InstallmentPlan:
        plan = await self.plans.get_plan_for_order(order_id)
        if plan is None:
            raise NotFound(f"No installment plan for order {order_id}", order_id=order_id)
        return plan

    async def list_plans(self) -> list[InstallmentPlan]:
        return await self.plans.list_plans()

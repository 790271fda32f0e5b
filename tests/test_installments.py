"""Test installment plan generation, payment and reminders."""
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from engine.errors import InvalidPlanType, NotFound, ValidationError
from core.resilience.circuit_breaker import CircuitBreaker
from engine.installments import InstallmentService, build_installment_reminders, due_notices, split_amount
from engine.models import NOTICE_OVERDUE, NOTICE_REMINDER, InstallmentStatus, PlanStatus
from engine.notifications import INSTALLMENT_QUEUE, CustomerNotifier, NotificationDispatcher
from engine.stores import InMemoryInstallmentPlanStore
from engine.timeutils import add_months

NOW = datetime(2025, 1, 31, 9, 0, tzinfo=timezone.utc)


class RecordingNotifier(CustomerNotifier):
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.notices = []

    async def notify_late_return(self, reservation):
        pass

    async def notify_installment(self, notice):
        if self.fail:
            raise ConnectionError("sms gateway unreachable")
        self.notices.append(notice)


def notifying_service(notifier: RecordingNotifier) -> InstallmentService:
    breaker = CircuitBreaker(name="test", max_retries=0, timeout=1.0)
    dispatcher = NotificationDispatcher(notifier, breaker=breaker)
    return InstallmentService(InMemoryInstallmentPlanStore(), dispatcher=dispatcher)


def test_three_month_split_sums_exactly():
    assert split_amount(Decimal("10000"), 3) == [Decimal("3334"), Decimal("3333"), Decimal("3333")]


def test_two_month_split_matches_ceil_rule():
    assert split_amount(Decimal("10001"), 2) == [Decimal("5001"), Decimal("5000")]
    assert split_amount(Decimal("10000"), 2) == [Decimal("5000"), Decimal("5000")]


def test_split_never_produces_empty_installments():
    for total in range(3, 40):
        parts = split_amount(Decimal(total), 3)
        assert sum(parts) == total
        assert all(p > 0 for p in parts)


def test_split_rejects_non_positive_totals():
    with pytest.raises(ValidationError):
        split_amount(Decimal("0"), 2)
    with pytest.raises(ValidationError):
        split_amount(Decimal("-10"), 2)


def test_add_months_clamps_to_month_end():
    assert add_months(NOW, 1).day == 28
    assert add_months(NOW, 2).day == 31
    assert add_months(NOW, 3).day == 30


@pytest.mark.asyncio
async def test_create_three_month_plan():
    service = InstallmentService(InMemoryInstallmentPlanStore())
    plan = await service.create_plan("ORD-1", Decimal("10000"), "3-months", now=NOW)

    assert plan.status == PlanStatus.ACTIVE
    assert [i.amount for i in plan.installments] == [Decimal("3334"), Decimal("3333"), Decimal("3333")]
    assert [i.due_date for i in plan.installments] == [add_months(NOW, n) for n in (1, 2, 3)]
    assert all(i.status == InstallmentStatus.PENDING for i in plan.installments)


@pytest.mark.asyncio
async def test_unknown_plan_type_is_rejected():
    service = InstallmentService(InMemoryInstallmentPlanStore())
    with pytest.raises(InvalidPlanType):
        await service.create_plan("ORD-1", Decimal("10000"), "6-months")
    with pytest.raises(ValidationError):
        await service.create_plan("ORD-1", Decimal("10000"), "weekly")


@pytest.mark.asyncio
async def test_paying_every_installment_completes_the_plan():
    service = InstallmentService(InMemoryInstallmentPlanStore())
    plan = await service.create_plan("ORD-1", Decimal("9000"), "2-months", now=NOW)
    first, second = plan.installments

    after_first = await service.mark_paid(first.id, paid_at=NOW)
    assert after_first.status == PlanStatus.ACTIVE
    assert after_first.find(first.id).status == InstallmentStatus.PAID

    after_second = await service.mark_paid(second.id)
    assert after_second.status == PlanStatus.COMPLETED


@pytest.mark.asyncio
async def test_mark_paid_twice_is_a_no_op():
    service = InstallmentService(InMemoryInstallmentPlanStore())
    plan = await service.create_plan("ORD-1", Decimal("9000"), "2-months", now=NOW)
    inst = plan.installments[0]

    await service.mark_paid(inst.id, paid_at=NOW)
    again = await service.mark_paid(inst.id, paid_at=NOW + timedelta(days=5))

    assert again.find(inst.id).paid_at == NOW


@pytest.mark.asyncio
async def test_mark_paid_unknown_installment():
    service = InstallmentService(InMemoryInstallmentPlanStore())
    with pytest.raises(NotFound):
        await service.mark_paid("INST-MISSING")


@pytest.mark.asyncio
async def test_mark_overdue_flags_past_due_pending():
    service = InstallmentService(InMemoryInstallmentPlanStore())
    plan = await service.create_plan("ORD-1", Decimal("9000"), "3-months", now=NOW)
    await service.mark_paid(plan.installments[0].id, paid_at=NOW)

    changed = await service.mark_overdue(now=add_months(NOW, 2) + timedelta(days=1))

    assert changed == 1
    saved = await service.get_plan_for_order("ORD-1")
    assert [i.status for i in saved.installments] == [
        InstallmentStatus.PAID, InstallmentStatus.OVERDUE, InstallmentStatus.PENDING,
    ]


@pytest.mark.asyncio
async def test_get_plan_for_order_and_list():
    service = InstallmentService(InMemoryInstallmentPlanStore())
    await service.create_plan("ORD-1", Decimal("9000"), "3-months", now=NOW)
    await service.create_plan("ORD-2", Decimal("500"), "2-months", now=NOW)

    assert len(await service.list_plans()) == 2
    with pytest.raises(NotFound):
        await service.get_plan_for_order("ORD-404")


@pytest.mark.asyncio
async def test_reminders_bracket_each_pending_due_date():
    service = InstallmentService(InMemoryInstallmentPlanStore())
    plan = await service.create_plan("ORD-1", Decimal("9000"), "2-months", now=NOW)

    notices = build_installment_reminders(plan)

    assert len(notices) == 4
    due = plan.installments[0].due_date
    reminder, overdue = notices[0], notices[1]
    assert reminder.kind == "installment_reminder"
    assert reminder.send_at == due - timedelta(days=3)
    assert overdue.kind == "installment_overdue"
    assert overdue.send_at == due + timedelta(days=1)


@pytest.mark.asyncio
async def test_due_notices_skip_future_and_already_sent():
    service = InstallmentService(InMemoryInstallmentPlanStore())
    plan = await service.create_plan("ORD-1", Decimal("9000"), "2-months", now=NOW)
    first_due = plan.installments[0].due_date

    assert due_notices(plan, first_due - timedelta(days=4)) == []
    notices = due_notices(plan, first_due - timedelta(days=2))
    assert [(n.kind, n.installment_id) for n in notices] == [(NOTICE_REMINDER, plan.installments[0].id)]

    plan.installments[0].reminder_sent = True
    assert due_notices(plan, first_due - timedelta(days=2)) == []


@pytest.mark.asyncio
async def test_send_due_notices_sends_each_reminder_once():
    notifier = RecordingNotifier()
    service = notifying_service(notifier)
    plan = await service.create_plan("ORD-1", Decimal("9000"), "2-months", now=NOW)
    first = plan.installments[0]
    now = first.due_date - timedelta(days=2)

    run = await service.send_due_notices(now=now)
    await service.dispatcher.drain()

    assert run.to_dict() == {"marked_overdue": 0, "reminders": 1, "overdue_notices": 0, "plans_updated": 1}
    assert [n.installment_id for n in notifier.notices] == [first.id]
    saved = await service.get_plan_for_order("ORD-1")
    assert saved.installments[0].reminder_sent
    assert not saved.installments[1].reminder_sent

    again = await service.send_due_notices(now=now)
    assert again.reminders == 0
    assert again.plans_updated == 0


@pytest.mark.asyncio
async def test_send_due_notices_flags_overdue_and_sends_overdue_notice():
    notifier = RecordingNotifier()
    service = notifying_service(notifier)
    plan = await service.create_plan("ORD-1", Decimal("9000"), "2-months", now=NOW)
    now = plan.installments[0].due_date + timedelta(days=2)

    run = await service.send_due_notices(now=now)
    await service.dispatcher.drain()

    assert run.marked_overdue == 1
    assert run.overdue_notices == 1
    assert run.reminders == 0
    assert [n.kind for n in notifier.notices] == [NOTICE_OVERDUE]
    saved = await service.get_plan_for_order("ORD-1")
    assert saved.installments[0].status == InstallmentStatus.OVERDUE
    assert saved.installments[0].overdue_notice_sent


@pytest.mark.asyncio
async def test_paid_installments_get_no_notices():
    notifier = RecordingNotifier()
    service = notifying_service(notifier)
    plan = await service.create_plan("ORD-1", Decimal("9000"), "2-months", now=NOW)
    await service.mark_paid(plan.installments[0].id, paid_at=NOW)

    run = await service.send_due_notices(now=plan.installments[0].due_date + timedelta(days=2))
    await service.dispatcher.drain()

    assert run.reminders == 0
    assert run.overdue_notices == 0
    assert notifier.notices == []


@pytest.mark.asyncio
async def test_failed_installment_notice_is_parked_and_redelivered():
    notifier = RecordingNotifier(fail=True)
    service = notifying_service(notifier)
    plan = await service.create_plan("ORD-1", Decimal("9000"), "2-months", now=NOW)

    await service.send_due_notices(now=plan.installments[0].due_date - timedelta(days=2))
    await service.dispatcher.drain()

    dlq = service.dispatcher.dlq
    assert dlq.get_stats(INSTALLMENT_QUEUE).pending == 1
    assert (await service.get_plan_for_order("ORD-1")).installments[0].reminder_sent

    notifier.fail = False
    assert await service.dispatcher.redeliver_installment_notices() == 1
    assert notifier.notices[0].kind == NOTICE_REMINDER
    assert dlq.get_stats(INSTALLMENT_QUEUE).resolved == 1

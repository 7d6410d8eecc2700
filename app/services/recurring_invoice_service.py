"""
Billforge - Recurring Invoice Service

Recurring templates and the generation engine.

A run materializes one DRAFT invoice from the template, advances next_run_at
and the occurrence counter, and cancels the template when its end date or
occurrence limit is reached. All of that commits together; auto-send happens
afterwards and cannot undo the run.
"""

import logging
import uuid
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

from dateutil.relativedelta import relativedelta
from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.models.client import Client
from app.models.invoice import DiscountType, Invoice
from app.models.recurring_invoice import (
    RecurringFrequency,
    RecurringInvoice,
    RecurringInvoiceItem,
    RecurringStatus,
)
from app.models.user import User
from app.services.invoice_service import InvoiceService
from app.services.invoice_totals import validated_totals
from app.services.invoice_workflow import invoice_load_options
from app.utils.error_handling import (
    ClientNotFoundException,
    ErrorCode,
    RecurringInvoiceNotFoundException,
    RecurringScheduleException,
    ValidationException,
)
from app.utils.time import start_of_day, utcnow

logger = logging.getLogger(__name__)

DEFAULT_DUE_DAYS = 30

# Fields whose change moves the schedule
SCHEDULE_FIELDS = ("frequency", "interval", "start_date")


def compute_next_run(
    current: datetime,
    frequency: RecurringFrequency,
    interval: int = 1,
    anchor_day: Optional[int] = None,
) -> datetime:
    """
    Next run after current.

    Monthly and yearly steps clamp to the last day of a shorter target month
    and return to anchor_day (default: current's day) when the month allows:
    Jan 31 -> Feb 29 (2024) -> Mar 31.
    """
    if interval < 1:
        raise ValueError("interval must be a positive integer")
    if frequency == RecurringFrequency.DAILY:
        return current + timedelta(days=interval)
    if frequency == RecurringFrequency.WEEKLY:
        return current + timedelta(weeks=interval)

    day = anchor_day or current.day
    if frequency == RecurringFrequency.MONTHLY:
        return current + relativedelta(months=interval, day=day)
    if frequency == RecurringFrequency.YEARLY:
        return current + relativedelta(years=interval, day=day)
    raise ValueError(f"Unsupported frequency: {frequency}")


def schedule_exhausted(template: RecurringInvoice) -> bool:
    """True when the template may not run again."""
    if template.max_occurrences and template.occurrences_count >= template.max_occurrences:
        return True
    if template.end_date and template.next_run_at.date() > template.end_date:
        return True
    return False


class RecurringInvoiceService:
    """Service for recurring invoice templates."""

    def __init__(self, db: AsyncSession, invoice_service: Optional[InvoiceService] = None):
        self.db = db
        self.invoice_service = invoice_service or InvoiceService(db)

    # ===========================================
    # TEMPLATE CRUD
    # ===========================================

    async def _ensure_client(self, user_id: uuid.UUID, client_id: uuid.UUID) -> None:
        result = await self.db.execute(
            select(Client.id).where(Client.id == client_id, Client.user_id == user_id)
        )
        if result.first() is None:
            raise ClientNotFoundException(client_id)

    @staticmethod
    def _check_pricing(
        lines: Sequence[Tuple[Decimal, Decimal]],
        tax_rate: Optional[Decimal],
        discount: Optional[Decimal],
        discount_type: Optional[DiscountType],
    ) -> None:
        """Every generated invoice must come out with a non-negative total."""
        validated_totals(
            lines,
            tax_rate=tax_rate or Decimal("0"),
            discount=discount or Decimal("0"),
            discount_type=discount_type or DiscountType.FIXED,
        )

    @staticmethod
    def _build_items(items: Sequence[Dict[str, Any]]) -> List[RecurringInvoiceItem]:
        return [
            RecurringInvoiceItem(
                position=position,
                description=item["description"],
                quantity=item["quantity"],
                rate=item["rate"],
            )
            for position, item in enumerate(items)
        ]

    async def _load(
        self,
        template_id: uuid.UUID,
        user_id: Optional[uuid.UUID] = None,
        for_update: bool = False,
    ) -> RecurringInvoice:
        query = (
            select(RecurringInvoice)
            .options(selectinload(RecurringInvoice.items))
            .where(RecurringInvoice.id == template_id)
            .execution_options(populate_existing=True)
        )
        if user_id is not None:
            query = query.where(RecurringInvoice.user_id == user_id)
        if for_update:
            query = query.with_for_update(of=RecurringInvoice)
        template = (await self.db.execute(query)).scalar_one_or_none()
        if template is None:
            raise RecurringInvoiceNotFoundException(template_id)
        return template

    async def get_template(self, user_id: uuid.UUID, template_id: uuid.UUID) -> RecurringInvoice:
        return await self._load(template_id, user_id)

    async def list_templates(
        self,
        user_id: uuid.UUID,
        status: Optional[RecurringStatus] = None,
        client_id: Optional[uuid.UUID] = None,
    ) -> Tuple[List[RecurringInvoice], int]:
        conditions = [RecurringInvoice.user_id == user_id]
        if status:
            conditions.append(RecurringInvoice.status == status)
        if client_id:
            conditions.append(RecurringInvoice.client_id == client_id)

        result = await self.db.execute(
            select(RecurringInvoice)
            .options(selectinload(RecurringInvoice.items))
            .where(and_(*conditions))
            .order_by(RecurringInvoice.next_run_at)
        )
        templates = list(result.scalars().all())
        return templates, len(templates)

    async def create_template(
        self,
        user_id: uuid.UUID,
        client_id: uuid.UUID,
        name: str,
        frequency: RecurringFrequency,
        start_date: date,
        items: Sequence[Dict[str, Any]],
        interval: int = 1,
        **fields: Any,
    ) -> RecurringInvoice:
        """Create an ACTIVE template whose first run is due at midnight of start_date."""
        if interval < 1:
            raise ValidationException("Interval must be at least 1", field="interval")
        if not items:
            raise ValidationException("A recurring invoice needs at least one item", field="items")
        end_date = fields.get("end_date")
        if end_date and end_date < start_date:
            raise ValidationException("End date must be on or after start date", field="end_date")
        self._check_pricing(
            [(i["quantity"], i["rate"]) for i in items],
            fields.get("tax_rate"),
            fields.get("discount"),
            fields.get("discount_type"),
        )
        await self._ensure_client(user_id, client_id)

        if fields.get("currency"):
            fields["currency"] = fields["currency"].upper()
        template = RecurringInvoice(
            user_id=user_id,
            client_id=client_id,
            name=name,
            frequency=frequency,
            interval=interval,
            start_date=start_date,
            next_run_at=start_of_day(start_date),
            occurrences_count=0,
            status=RecurringStatus.ACTIVE,
            items=self._build_items(items),
            **fields,
        )
        self.db.add(template)
        await self.db.commit()
        logger.info(f"Created recurring invoice {template.id} ({frequency.value}) for user {user_id}")
        return await self._load(template.id)

    async def update_template(
        self,
        user_id: uuid.UUID,
        template_id: uuid.UUID,
        items: Optional[Sequence[Dict[str, Any]]] = None,
        **fields: Any,
    ) -> RecurringInvoice:
        """
        Partial update. Changing frequency, interval or start date recomputes
        next_run_at from the last run, or from the start date before any run.
        """
        template = await self._load(template_id, user_id)
        if template.status == RecurringStatus.CANCELLED:
            raise RecurringScheduleException(
                "Cancelled recurring invoices cannot be edited", code=ErrorCode.SCHEDULE_NOT_ACTIVE
            )

        fields = {k: v for k, v in fields.items() if v is not None}
        if "client_id" in fields:
            await self._ensure_client(user_id, fields["client_id"])
        if "currency" in fields:
            fields["currency"] = fields["currency"].upper()

        schedule_changed = any(
            key in fields and fields[key] != getattr(template, key) for key in SCHEDULE_FIELDS
        )
        end_date = fields.get("end_date", template.end_date)
        if end_date and end_date < fields.get("start_date", template.start_date):
            raise ValidationException("End date must be on or after start date", field="end_date")
        if items is not None and not items:
            raise ValidationException("A recurring invoice needs at least one item", field="items")
        self._check_pricing(
            [(i["quantity"], i["rate"]) for i in items]
            if items is not None
            else [(i.quantity, i.rate) for i in template.items],
            fields.get("tax_rate", template.tax_rate),
            fields.get("discount", template.discount),
            fields.get("discount_type", template.discount_type),
        )

        for key, value in fields.items():
            setattr(template, key, value)

        if items is not None:
            template.items.clear()
            await self.db.flush()
            template.items.extend(self._build_items(items))

        if schedule_changed:
            if template.last_run_at:
                template.next_run_at = compute_next_run(
                    start_of_day(template.last_run_at.date()),
                    template.frequency,
                    template.interval,
                    template.anchor_day,
                )
            else:
                template.next_run_at = start_of_day(template.start_date)

        await self.db.commit()
        return await self._load(template.id)

    async def delete_template(self, user_id: uuid.UUID, template_id: uuid.UUID) -> None:
        """Generated invoices survive; their template link is nulled."""
        template = await self._load(template_id, user_id)
        await self.db.execute(
            update(Invoice)
            .where(Invoice.recurring_template_id == template.id)
            .values(recurring_template_id=None)
            .execution_options(synchronize_session=False)
        )
        await self.db.delete(template)
        await self.db.commit()
        logger.info(f"Deleted recurring invoice {template_id}")

    # ===========================================
    # STATUS
    # ===========================================

    async def pause(self, user_id: uuid.UUID, template_id: uuid.UUID) -> RecurringInvoice:
        template = await self._load(template_id, user_id)
        if template.status != RecurringStatus.ACTIVE:
            raise RecurringScheduleException(
                f"Only active recurring invoices can be paused (status {template.status.value})",
                code=ErrorCode.SCHEDULE_NOT_ACTIVE,
            )
        template.status = RecurringStatus.PAUSED
        await self.db.commit()
        return template

    async def resume(self, user_id: uuid.UUID, template_id: uuid.UUID) -> RecurringInvoice:
        template = await self._load(template_id, user_id)
        if template.status != RecurringStatus.PAUSED:
            raise RecurringScheduleException(
                f"Only paused recurring invoices can be resumed (status {template.status.value})",
                code=ErrorCode.SCHEDULE_NOT_ACTIVE,
            )
        template.status = RecurringStatus.ACTIVE
        await self.db.commit()
        return template

    async def cancel(self, user_id: uuid.UUID, template_id: uuid.UUID) -> RecurringInvoice:
        template = await self._load(template_id, user_id)
        if template.status != RecurringStatus.CANCELLED:
            template.status = RecurringStatus.CANCELLED
            await self.db.commit()
        return template

    # ===========================================
    # GENERATION
    # ===========================================

    def _check_runnable(self, template: RecurringInvoice, now: datetime, bypass_due: bool) -> None:
        if template.status != RecurringStatus.ACTIVE:
            raise RecurringScheduleException(
                f"Recurring invoice is {template.status.value}", code=ErrorCode.SCHEDULE_NOT_ACTIVE
            )
        if template.end_date and now.date() > template.end_date:
            raise RecurringScheduleException(
                "Recurring invoice end date has passed", code=ErrorCode.SCHEDULE_FINISHED
            )
        if template.max_occurrences and template.occurrences_count >= template.max_occurrences:
            raise RecurringScheduleException(
                "Recurring invoice reached its maximum occurrences", code=ErrorCode.SCHEDULE_FINISHED
            )
        if not bypass_due and template.next_run_at > now:
            raise RecurringScheduleException(
                f"Recurring invoice is not due yet (next run {template.next_run_at.isoformat()})",
                code=ErrorCode.SCHEDULE_NOT_DUE,
            )

    async def generate(
        self,
        template_id: uuid.UUID,
        now: Optional[datetime] = None,
        user_id: Optional[uuid.UUID] = None,
        bypass_due: bool = False,
    ) -> Invoice:
        """
        Materialize the next invoice of a template.

        The invoice is dated at the scheduled run, or at now for a manual run
        ahead of schedule. Invoice, items, history,
        schedule advancement and auto-cancel commit in one transaction.
        """
        now = now or utcnow()
        try:
            template = await self._load(template_id, user_id, for_update=True)
            self._check_runnable(template, now, bypass_due)

            user = await self.db.get(User, template.user_id)
            scheduled = template.next_run_at
            # A manual run ahead of schedule is dated on the day it happens
            invoice_date = (min(scheduled, now) if bypass_due else scheduled).date()
            due_days = template.due_in_days or user.payment_terms or DEFAULT_DUE_DAYS

            invoice = await self.invoice_service.build_invoice(
                user,
                template.client_id,
                due_date=invoice_date + timedelta(days=due_days),
                items=[
                    {"description": i.description, "quantity": i.quantity, "rate": i.rate}
                    for i in template.items
                ],
                invoice_date=invoice_date,
                tax_rate=template.tax_rate,
                discount=template.discount,
                discount_type=template.discount_type,
                currency=template.currency,
                notes=template.notes,
                terms=template.terms,
                history_description=f"Invoice generated from recurring invoice '{template.name}'",
                recurring_template_id=template.id,
            )

            template.last_run_at = now
            template.occurrences_count += 1
            template.next_run_at = compute_next_run(
                template.next_run_at, template.frequency, template.interval, template.anchor_day
            )
            if schedule_exhausted(template):
                template.status = RecurringStatus.CANCELLED
                logger.info(f"Recurring invoice {template.id} finished after {template.occurrences_count} runs")

            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            f"Generated invoice {invoice.invoice_number} from recurring invoice {template.id}; "
            f"next run {template.next_run_at.isoformat()}"
        )

        # Rollback below expires the loaded rows
        owner_id, invoice_id, invoice_number = template.user_id, invoice.id, invoice.invoice_number
        if template.auto_send:
            try:
                await self.invoice_service.send_invoice(owner_id, invoice_id)
            except Exception as e:
                logger.error(f"Auto-send failed for generated invoice {invoice_number}: {e}")
                await self.db.rollback()

        return await self.invoice_service.get_invoice(owner_id, invoice_id)

    async def run_now(self, user_id: uuid.UUID, template_id: uuid.UUID) -> Invoice:
        """Manual run; ignores next_run_at but keeps every other guard."""
        return await self.generate(template_id, user_id=user_id, bypass_due=True)

    async def process_due(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Run every due template independently; one failure does not stop the rest."""
        now = now or utcnow()
        result = await self.db.execute(
            select(RecurringInvoice.id)
            .where(RecurringInvoice.status == RecurringStatus.ACTIVE)
            .where(RecurringInvoice.next_run_at <= now)
            .where(or_(RecurringInvoice.end_date.is_(None), RecurringInvoice.end_date >= now.date()))
            .order_by(RecurringInvoice.next_run_at)
        )
        template_ids = list(result.scalars().all())

        processed = failed = 0
        for template_id in template_ids:
            try:
                await self.generate(template_id, now=now)
                processed += 1
            except Exception as e:
                failed += 1
                logger.error(f"Recurring invoice {template_id} failed to generate: {e}")

        if template_ids:
            logger.info(f"Recurring run at {now.isoformat()}: {processed} generated, {failed} failed")
        return {"processed": processed, "failed": failed}

    async def generated_invoices(self, user_id: uuid.UUID, template_id: uuid.UUID) -> List[Invoice]:
        await self._load(template_id, user_id)
        result = await self.db.execute(
            select(Invoice)
            .options(*invoice_load_options())
            .where(Invoice.recurring_template_id == template_id, Invoice.user_id == user_id)
            .order_by(Invoice.invoice_date)
        )
        return list(result.scalars().all())

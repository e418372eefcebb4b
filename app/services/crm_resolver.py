"""Find or create the amoCRM contact and open deal behind a MAX user.

The amoCRM chat channel creates contacts and deals on its own, slightly
after the first message arrives, so lookups here tolerate both orders of
events: a contact may exist before its deal, and may be known only by the
placeholder name the channel gave it.
"""

import asyncio
import re
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

import httpx

from app.logging_config import get_logger
from app.schemas.order import CompletedOrder
from app.services.amo_service import (
    BRANCH_FIELD_ID,
    DEAL_ADDRESS_FIELD_ID,
    DEAL_CARD_TEXT_FIELD_ID,
    DEAL_CUSTOMER_NAME_FIELD_ID,
    DEAL_CUSTOMER_PHONE_FIELD_ID,
    DEAL_RECIPIENT_NAME_FIELD_ID,
    DEAL_RECIPIENT_PHONE_FIELD_ID,
    DEAL_SHIPMENT_DATE_FIELD_ID,
    DEAL_TIME_FIELD_ID,
    FULFILLMENT_DELIVERY_ENUM_ID,
    FULFILLMENT_METHOD_FIELD_ID,
    FULFILLMENT_PICKUP_ENUM_ID,
    LEAD_CLOSED_STATUSES,
    QUALIFIED_STATUS_ID,
    TRAFFIC_SOURCE_FIELD_ID,
    TRAFFIC_SOURCE_MAX_ENUM_ID,
    AmoApiError,
    AmoService,
    contact_max_id,
    placeholder_contact_name,
)
from app.services.identity_registry import IdentityRegistry
from app.services.order_session import NO_CARD_TEXT

logger = get_logger("crm_resolver")

MSK_UTC_OFFSET_HOURS = 3
DEFAULT_SHIPMENT_HOUR = 12
CONTACT_MANAGER_TASK_TEXT = "Клиент запросил связь с менеджером"
CONTACT_TASK_TYPE_NAME = "Связаться"
FALLBACK_TASK_TYPE_ID = 1  # "Звонок"
CONTACT_TASK_DEADLINE_SECONDS = 120


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    delay_schedule: tuple[float, ...] = (1.5, 2.0)

    def delay_before(self, attempt: int) -> float:
        if not self.delay_schedule:
            return 0.0
        index = min(attempt - 1, len(self.delay_schedule) - 1)
        return self.delay_schedule[index]


NO_DELAY_RETRY = RetryPolicy(delay_schedule=(0.0,))


@dataclass
class ResolvedDeal:
    contact: dict
    deal: dict
    created: bool


@dataclass
class DealUpdate:
    deal: dict
    contact: Optional[dict] = None


def order_shipment_timestamp(date_text: Optional[str], time_text: Optional[str]) -> Optional[int]:
    """DD.MM.YYYY plus the first hour of the time slot, Moscow time, as unix seconds."""
    if not date_text:
        return None
    try:
        day, month, year = (int(part) for part in date_text.strip().split("."))
        midnight = datetime(year, month, day, tzinfo=timezone.utc)
    except ValueError:
        return None

    hour = DEFAULT_SHIPMENT_HOUR
    match = re.match(r"^([0-9]{1,2})", time_text or "")
    if match:
        hour = int(match.group(1))
    return int((midnight + timedelta(hours=hour - MSK_UTC_OFFSET_HOURS)).timestamp())


def build_order_fields(order: CompletedOrder, branch_id: Optional[int] = None) -> list[dict]:
    fulfillment = FULFILLMENT_PICKUP_ENUM_ID if order.is_pickup else FULFILLMENT_DELIVERY_ENUM_ID
    fields = [
        {"field_id": DEAL_TIME_FIELD_ID, "values": [{"value": order.time}]},
        {"field_id": DEAL_CARD_TEXT_FIELD_ID, "values": [{"value": order.card_text or NO_CARD_TEXT}]},
        {"field_id": DEAL_ADDRESS_FIELD_ID, "values": [{"value": order.address or ""}]},
        {"field_id": DEAL_CUSTOMER_NAME_FIELD_ID, "values": [{"value": order.your_name}]},
        {"field_id": DEAL_CUSTOMER_PHONE_FIELD_ID, "values": [{"value": order.your_phone}]},
        {"field_id": FULFILLMENT_METHOD_FIELD_ID, "values": [{"enum_id": fulfillment}]},
    ]
    if order.recipient_name:
        fields.append({"field_id": DEAL_RECIPIENT_NAME_FIELD_ID, "values": [{"value": order.recipient_name}]})
    # форма подставляет "+7" в пустое поле телефона
    if order.recipient_phone and order.recipient_phone != "+7":
        fields.append({"field_id": DEAL_RECIPIENT_PHONE_FIELD_ID, "values": [{"value": order.recipient_phone}]})

    shipment = order_shipment_timestamp(order.date, order.time)
    if shipment:
        fields.append({"field_id": DEAL_SHIPMENT_DATE_FIELD_ID, "values": [{"value": shipment}]})
    if branch_id:
        fields.append({"field_id": BRANCH_FIELD_ID, "values": [{"enum_id": branch_id}]})
    return fields


class CrmResolver:
    def __init__(
        self,
        amo: AmoService,
        identities: IdentityRegistry,
        *,
        retry_policy: RetryPolicy = RetryPolicy(),
        sleep_func: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.amo = amo
        self.identities = identities
        self.retry_policy = retry_policy
        self.sleep_func = sleep_func
        self.clock = clock
        self._contact_task_type_id: Optional[int] = None

    async def _remembered_contact(self, user_id: str) -> Optional[dict]:
        contact_id = self.identities.get(user_id).crm_contact_id
        if contact_id is None:
            return None

        contact = await self.amo.get_contact(contact_id)
        if contact is None:
            logger.warning(
                "Remembered amoCRM contact is gone",
                extra={"context": {"user_id": user_id, "contact_id": contact_id}},
            )
            self.identities.forget_contact(user_id)
            return None

        # менеджер мог стереть поле Max ID
        if contact_max_id(contact) != str(user_id):
            await self.amo.set_contact_max_id(contact["id"], user_id)
            logger.info(
                "Max ID restored on remembered contact",
                extra={"context": {"user_id": user_id, "contact_id": contact["id"]}},
            )
        return contact

    async def resolve_contact(self, user_id: str) -> Optional[dict]:
        """Remembered contact first, then the Max ID field, then the channel's placeholder name.

        A contact found by name gets its Max ID back-filled. Phone lookup
        is never used here: it merges unrelated people.
        """
        contact = await self._remembered_contact(user_id)
        if contact is not None:
            return contact

        contact = await self.amo.find_contact_by_max_id(user_id)
        if contact is None:
            contact = await self.amo.find_contact_by_name(placeholder_contact_name(user_id))
            if contact is not None:
                await self.amo.set_contact_max_id(contact["id"], user_id)
                logger.info(
                    "Max ID back-filled on contact",
                    extra={"context": {"user_id": user_id, "contact_id": contact["id"]}},
                )
        if contact is not None:
            self.identities.remember_contact(user_id, contact["id"])
        return contact

    async def find_open_deal(self, contact_id: int) -> Optional[dict]:
        """Newest deal of the contact that is not closed.

        When every deal is closed the newest one is still returned.
        """
        lead_ids = sorted(await self.amo.get_contact_lead_ids(contact_id), reverse=True)
        if not lead_ids:
            return None

        for lead_id in lead_ids:
            try:
                lead = await self.amo.get_lead(lead_id)
            except AmoApiError as e:
                logger.warning(f"amoCRM: failed to load lead #{lead_id}: {e}")
                continue
            if lead and lead.get("status_id") not in LEAD_CLOSED_STATUSES:
                return lead

        return await self.amo.get_lead(lead_ids[0])

    async def ensure_open_deal(self, user_id: str, display_name: Optional[str] = None) -> Optional[ResolvedDeal]:
        contact = await self.resolve_contact(user_id)
        if contact is None:
            contact = await self.amo.create_contact(display_name or placeholder_contact_name(user_id))
            if contact is None:
                logger.error("amoCRM: contact was not created", extra={"context": {"user_id": user_id}})
                return None
            await self.amo.set_contact_max_id(contact["id"], user_id)
            self.identities.remember_contact(user_id, contact["id"])

        deal = await self.find_open_deal(contact["id"])
        if deal is not None and deal.get("status_id") not in LEAD_CLOSED_STATUSES:
            return ResolvedDeal(contact=contact, deal=deal, created=False)

        name = display_name or contact.get("name") or placeholder_contact_name(user_id)
        deal = await self.amo.create_lead(
            f"Новое обращение - {name}",
            [{"field_id": TRAFFIC_SOURCE_FIELD_ID, "values": [{"enum_id": TRAFFIC_SOURCE_MAX_ENUM_ID}]}],
            contact_id=contact["id"],
        )
        if deal is None:
            logger.error("amoCRM: lead was not created", extra={"context": {"user_id": user_id}})
            return None

        self.identities.mark_traffic_source_set(user_id)
        logger.info(
            "amoCRM: new lead for MAX user",
            extra={"context": {"user_id": user_id, "contact_id": contact["id"], "lead_id": deal.get("id")}},
        )
        return ResolvedDeal(contact=contact, deal=deal, created=True)

    async def set_traffic_source_with_retry(self, user_id: str, contact_id: Optional[int] = None) -> bool:
        """Tag the user's deal with the MAX traffic source, waiting for it to appear."""
        if self.identities.is_traffic_source_set(user_id):
            return False

        policy = self.retry_policy
        for attempt in range(1, policy.max_attempts + 1):
            await self.sleep_func(policy.delay_before(attempt))
            context = {"user_id": user_id, "attempt": attempt}
            try:
                target_contact_id = contact_id
                if target_contact_id is None:
                    contact = await self.resolve_contact(user_id)
                    if contact is None:
                        logger.info("Traffic source: contact not found yet", extra={"context": context})
                        continue
                    target_contact_id = contact["id"]

                deal = await self.find_open_deal(target_contact_id)
                if deal is None:
                    logger.info("Traffic source: deal not found yet", extra={"context": context})
                    continue

                await self.amo.set_lead_traffic_source(deal["id"])
                self.identities.mark_traffic_source_set(user_id)
                logger.info("Traffic source set", extra={"context": {**context, "lead_id": deal["id"]}})
                return True
            except (AmoApiError, httpx.HTTPError) as e:
                logger.error("Traffic source attempt failed", extra={"context": {**context, "error": str(e)}})

        logger.info(
            f"Traffic source not set for MAX #{user_id} after {policy.max_attempts} attempts",
            extra={"context": {"user_id": user_id}},
        )
        return False

    async def _locate_contact_and_deal(self, user_id: str) -> tuple[Optional[dict], Optional[dict]]:
        contact = await self._remembered_contact(user_id)
        if contact is not None:
            # привязанный контакт не подменяется найденным по поиску
            return contact, await self.find_open_deal(contact["id"])

        contact = await self.amo.find_contact_by_max_id(user_id)
        if contact is not None:
            deal = await self.find_open_deal(contact["id"])
            if deal is not None:
                self.identities.remember_contact(user_id, contact["id"])
                return contact, deal

        contact = await self.amo.find_contact_by_name(placeholder_contact_name(user_id))
        if contact is not None:
            deal = await self.find_open_deal(contact["id"])
            if deal is not None:
                await self.amo.set_contact_max_id(contact["id"], user_id)
                self.identities.remember_contact(user_id, contact["id"])
                return contact, deal

        return None, None

    async def update_deal_from_order(
        self, order: CompletedOrder, user_id: str, branch_id: Optional[int] = None
    ) -> Optional[DealUpdate]:
        contact, deal = await self._locate_contact_and_deal(user_id)
        if contact is None or deal is None:
            logger.warning("amoCRM: no deal to update for order", extra={"context": {"user_id": user_id}})
            return None

        await self.amo.update_lead(deal["id"], build_order_fields(order, branch_id), status_id=QUALIFIED_STATUS_ID)
        logger.info("amoCRM: deal updated from order", extra={"context": {"user_id": user_id, "lead_id": deal["id"]}})

        # контакты, созданные каналом чатов, amoCRM может не дать править
        try:
            await self.amo.update_contact(contact["id"], name=order.your_name, phone=order.your_phone)
        except (AmoApiError, httpx.HTTPError) as e:
            logger.warning(
                "amoCRM: contact update rejected",
                extra={"context": {"contact_id": contact["id"], "error": str(e)}},
            )

        return DealUpdate(deal=deal, contact=contact)

    async def update_deal_by_id(
        self, order: CompletedOrder, deal_id: int, branch_id: Optional[int] = None
    ) -> DealUpdate:
        updated = await self.amo.update_lead(deal_id, build_order_fields(order, branch_id), status_id=QUALIFIED_STATUS_ID)
        logger.info("amoCRM: deal updated from CRM form", extra={"context": {"lead_id": deal_id}})
        return DealUpdate(deal=updated or {"id": deal_id})

    async def _task_type_id(self) -> int:
        if self._contact_task_type_id is None:
            task_type = await self.amo.find_task_type_by_name(CONTACT_TASK_TYPE_NAME)
            self._contact_task_type_id = task_type["id"] if task_type else FALLBACK_TASK_TYPE_ID
        return self._contact_task_type_id

    async def create_contact_manager_task(self, user_id: str) -> Optional[dict]:
        contact = await self.resolve_contact(user_id)
        if contact is None:
            logger.info("Contact manager: contact not found", extra={"context": {"user_id": user_id}})
            return None

        deal = await self.find_open_deal(contact["id"])
        if deal is None:
            logger.info("Contact manager: deal not found", extra={"context": {"contact_id": contact["id"]}})
            return None

        responsible_user_id = deal.get("responsible_user_id")
        if not responsible_user_id:
            logger.info("Contact manager: deal has no responsible user", extra={"context": {"lead_id": deal["id"]}})
            return None

        task = await self.amo.create_task(
            lead_id=deal["id"],
            responsible_user_id=responsible_user_id,
            text=CONTACT_MANAGER_TASK_TEXT,
            task_type_id=await self._task_type_id(),
            complete_till=int(self.clock()) + CONTACT_TASK_DEADLINE_SECONDS,
        )
        if task:
            logger.info(
                "Contact manager task created",
                extra={"context": {"task_id": task.get("id"), "lead_id": deal["id"], "user_id": user_id}},
            )
        return task

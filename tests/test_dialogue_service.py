import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from app.services import messages
from app.services.analytics_service import AnalyticsService
from app.services.background import BackgroundTaskRunner
from app.services.catalog_service import CatalogService
from app.services.crm_resolver import NO_DELAY_RETRY, CrmResolver
from app.services.dialogue_service import DialogueService, parse_callback_payload
from app.services.identity_registry import IdentityRegistry
from app.services.max_service import MaxApiError
from app.services.order_session import OrderSessionService
from app.services.order_token import ChatOrderToken, OrderTokenCodec
from app.services.product_image_service import ProductImageError
from app.services.session_store import InMemoryStore
from app.services.state_machine import OrderStep

CHAT_ID = "C1"
USER_ID = "U1"


@pytest.fixture
def submission():
    mock = MagicMock()
    mock.submit_chat_order = AsyncMock()
    return mock


@pytest.fixture
def amo_chat():
    mock = MagicMock()
    mock.is_configured.return_value = False
    mock.get_or_create_chat = AsyncMock(return_value="max_C1")
    mock.send_message_to_amo = AsyncMock(return_value="msg-1")
    return mock


@pytest.fixture
def images():
    service = MagicMock()
    service.download = AsyncMock(return_value=b"jpeg")
    return service


@pytest.fixture
def dialogue(fake_max, fake_amo, session_factory, submission, amo_chat, images, no_sleep):
    resolver = CrmResolver(fake_amo, IdentityRegistry(InMemoryStore()), retry_policy=NO_DELAY_RETRY, sleep_func=no_sleep)
    return DialogueService(
        max_service=fake_max,
        sessions=OrderSessionService(InMemoryStore()),
        submission=submission,
        resolver=resolver,
        amo_chat=amo_chat,
        analytics=AnalyticsService(session_factory),
        catalog=CatalogService(),
        tokens=OrderTokenCodec("secret", "https://orange.example"),
        background=BackgroundTaskRunner(),
        images=images,
        sleep_func=no_sleep,
    )


def _run(dialogue: DialogueService, *steps):
    """Run handler calls in order on one loop, then wait for background work."""

    async def main():
        for step in steps:
            await step()
        await dialogue.background.drain()

    asyncio.run(main())


def _message(dialogue, text):
    return lambda: dialogue.handle_message(CHAT_ID, USER_ID, text, "Иван")


def _callback(dialogue, payload):
    return lambda: dialogue.handle_callback("cb-1", payload, CHAT_ID, USER_ID)


class TestCallbackPayload:
    def test_parse(self):
        assert parse_callback_payload("order_time:exact") == ("order_time", "exact", None)
        assert parse_callback_payload("a:b:c") == ("a", "b", "c")
        assert parse_callback_payload("order") == ("order", None, None)
        assert parse_callback_payload(None) == ("", None, None)


class TestBotStarted:
    def test_greeting_and_open_deal(self, dialogue, fake_max, fake_amo):
        _run(dialogue, lambda: dialogue.handle_bot_started(CHAT_ID, USER_ID, "Иван"))

        assert fake_max.sent[0]["text"] == messages.GREETING
        assert fake_max.sent[0]["buttons"] == messages.MAIN_MENU
        assert fake_amo.call_names().count("create_lead") == 1

    def test_amo_chat_is_opened_when_configured(self, dialogue, amo_chat):
        amo_chat.is_configured.return_value = True

        _run(dialogue, lambda: dialogue.handle_bot_started(CHAT_ID, USER_ID, "Иван"))

        amo_chat.get_or_create_chat.assert_awaited_once_with(CHAT_ID, USER_ID, "Иван")

    def test_disabled_chat(self, dialogue, fake_max):
        dialogue.analytics.disable_bot(CHAT_ID)

        _run(dialogue, lambda: dialogue.handle_bot_started(CHAT_ID, USER_ID))

        assert fake_max.sent == []


class TestMessages:
    def test_without_session_shows_menu(self, dialogue, fake_max):
        _run(dialogue, _message(dialogue, "Здравствуйте"))

        assert fake_max.sent[-1]["buttons"] == messages.MAIN_MENU
        assert fake_max.typing == [CHAT_ID]

    def test_relay_to_amo(self, dialogue, amo_chat):
        amo_chat.is_configured.return_value = True

        _run(dialogue, _message(dialogue, "Хочу розы"))

        amo_chat.send_message_to_amo.assert_awaited_once_with(CHAT_ID, USER_ID, "Хочу розы", "Иван")

    def test_disabled_chat_is_ignored(self, dialogue, fake_max):
        dialogue.analytics.disable_bot(CHAT_ID)

        _run(dialogue, _message(dialogue, "Привет"))

        assert fake_max.sent == []
        assert fake_max.typing == []

    def test_error_reply(self, dialogue, fake_max):
        with patch.object(dialogue, "show_main_menu", AsyncMock(side_effect=RuntimeError("boom"))):
            _run(dialogue, _message(dialogue, "Привет"))

        assert fake_max.texts(CHAT_ID) == [messages.ERROR]


class TestOrderForm:
    def test_full_order(self, dialogue, fake_max, submission):
        _run(
            dialogue,
            _callback(dialogue, "order"),
            _message(dialogue, "20.12.2025"),
            _callback(dialogue, "order_time:afternoon"),
            _message(dialogue, "Самара, Ленина 5"),
            _callback(dialogue, "order_skip:cardText"),
            _message(dialogue, "Иван"),
            _message(dialogue, "123"),
            _message(dialogue, "+7 999 123-45-67"),
            _message(dialogue, "Ольга"),
            _message(dialogue, "9997654321"),
            _callback(dialogue, "order_confirm"),
        )

        texts = fake_max.texts(CHAT_ID)
        assert texts[:2] == [messages.ORDER_START, messages.ORDER_ASK_DATE]
        assert messages.ORDER_INVALID_PHONE in texts
        assert texts[-1].startswith("📋 *Ваш заказ:*")
        assert fake_max.sent[-1]["buttons"] == messages.ORDER_CONFIRM_BUTTONS

        order, chat_id, user_id = submission.submit_chat_order.call_args.args
        assert (chat_id, user_id) == (CHAT_ID, USER_ID)
        assert order.time == "День (12:00-17:00)"
        assert order.card_text == "Без подписи"
        assert order.your_phone == "+7 999 123-45-67"
        assert order.recipient_phone == "9997654321"
        assert dialogue.sessions.has_active(CHAT_ID) is False
        assert fake_max.callbacks_answered == ["cb-1"] * 4

    def test_invalid_phone_keeps_step(self, dialogue):
        dialogue.sessions.start(CHAT_ID)
        for value in ("20.12.2025", "12:00", "Ленина 5", "С любовью", "Иван"):
            dialogue.sessions.save_answer(CHAT_ID, value)

        _run(dialogue, _message(dialogue, "12-34"))

        assert dialogue.sessions.get(CHAT_ID).step == OrderStep.YOUR_PHONE

    def test_exact_time(self, dialogue, fake_max):
        _run(
            dialogue,
            _callback(dialogue, "order"),
            _message(dialogue, "20.12.2025"),
            _callback(dialogue, "order_time:exact"),
            _message(dialogue, "14:30"),
        )

        session = dialogue.sessions.get(CHAT_ID)
        assert session.step == OrderStep.ADDRESS
        assert session.to_order().exact_time_value == "14:30"
        assert fake_max.texts(CHAT_ID)[-1] == messages.ORDER_ASK_ADDRESS

    def test_ask_recipient_address(self, dialogue):
        _run(
            dialogue,
            _callback(dialogue, "order"),
            _message(dialogue, "20.12.2025"),
            _callback(dialogue, "order_time:morning"),
            _callback(dialogue, "order_ask_address"),
        )

        assert dialogue.sessions.get(CHAT_ID).step == OrderStep.CARD_TEXT

    def test_stale_button_repeats_question(self, dialogue, fake_max):
        _run(dialogue, _callback(dialogue, "order"), _callback(dialogue, "order_skip:cardText"))

        assert dialogue.sessions.get(CHAT_ID).step == OrderStep.DATE
        assert fake_max.texts(CHAT_ID)[-1] == messages.ORDER_ASK_DATE

    def test_old_buttons_do_not_change_submitted_order(self, dialogue, fake_max, submission):
        _run(
            dialogue,
            _callback(dialogue, "order"),
            _message(dialogue, "20.12.2025"),
            _callback(dialogue, "order_time:afternoon"),
            _message(dialogue, "Самара, Ленина 5"),
            _message(dialogue, "С любовью"),
            _message(dialogue, "Иван"),
            _message(dialogue, "+79991234567"),
            _message(dialogue, "Ольга"),
            _message(dialogue, "9997654321"),
            # кнопки из старых сообщений
            _callback(dialogue, "order_time:evening"),
            _callback(dialogue, "order_ask_address"),
            _callback(dialogue, "order_skip:cardText"),
            _callback(dialogue, "order_confirm"),
        )

        order, _, _ = submission.submit_chat_order.call_args.args
        assert order.time == "День (12:00-17:00)"
        assert order.address == "Самара, Ленина 5"
        assert order.card_text == "С любовью"
        assert fake_max.texts(CHAT_ID).count(messages.ORDER_ASK_CARD_TEXT) == 1

    def test_confirm_before_last_step(self, dialogue, fake_max, submission):
        _run(dialogue, _callback(dialogue, "order"), _callback(dialogue, "order_confirm"))

        submission.submit_chat_order.assert_not_called()
        assert dialogue.sessions.has_active(CHAT_ID) is True
        assert fake_max.texts(CHAT_ID)[-1] == messages.ORDER_ASK_DATE

    def test_text_at_confirm_repeats_summary(self, dialogue, fake_max):
        dialogue.sessions.start(CHAT_ID)
        for value in ("20.12.2025", "12:00", "Ленина 5", "С любовью", "Иван", "9991234567", "Ольга", "9997654321"):
            dialogue.sessions.save_answer(CHAT_ID, value)

        _run(dialogue, _message(dialogue, "да"))

        assert dialogue.sessions.get(CHAT_ID).step == OrderStep.CONFIRM
        assert fake_max.texts(CHAT_ID)[-1].startswith("📋 *Ваш заказ:*")

    def test_cancel(self, dialogue, fake_max):
        _run(dialogue, _callback(dialogue, "order"), _callback(dialogue, "order_cancel"))

        assert dialogue.sessions.has_active(CHAT_ID) is False
        assert fake_max.texts(CHAT_ID)[-1] == messages.ORDER_CANCELLED


class TestCatalog:
    def test_categories(self, dialogue, fake_max):
        _run(dialogue, _callback(dialogue, "menu:catalog"))

        buttons = fake_max.sent[-1]["buttons"]
        assert buttons[0][0]["payload"] == "category:budget"
        assert buttons[-1][0]["payload"] == "back:main"

    def test_first_page_with_photos(self, dialogue, fake_max, images):
        _run(dialogue, _callback(dialogue, "category:premium"))

        header, *cards, prompt = fake_max.sent
        assert header["text"].startswith("🌹 От 6000₽")
        assert [card["image"] for card in cards] == [b"jpeg"] * 3
        assert cards[0]["text"] == "Розы 51 шт\n9 990 ₽\n+ бесплатная доставка"
        assert images.download.await_count == 3
        assert prompt["text"] == "Показано 3 из 5"
        assert prompt["buttons"][0][0]["payload"] == "more:premium:3"

        link = prompt["buttons"][1][0]
        assert link["type"] == "link"
        token = dialogue.tokens.verify(link["url"].split("t=", 1)[1])
        assert isinstance(token, ChatOrderToken)
        assert (token.chat_id, token.user_id) == (CHAT_ID, USER_ID)
        assert token.product_info == {"category": "premium"}

    def test_more_shows_last_page(self, dialogue, fake_max):
        _run(dialogue, _callback(dialogue, "more:premium:3"))

        cards = [item for item in fake_max.sent if "image" in item]
        assert [card["text"].split("\n")[0] for card in cards] == ["Розы 101 шт", "Свадебный букет"]
        prompt = fake_max.sent[-1]
        assert prompt["text"] == messages.NO_MORE_PRODUCTS
        assert prompt["buttons"][0][0]["type"] == "link"

    def test_bad_offset_starts_over(self, dialogue, fake_max):
        _run(dialogue, _callback(dialogue, "more:premium:abc"))

        assert fake_max.sent[1]["text"].startswith("Розы 51 шт")

    def test_photo_failure_falls_back_to_text(self, dialogue, fake_max, images):
        images.download.side_effect = [ProductImageError("404"), b"jpeg", b"jpeg"]
        fake_max.fail_images = True

        _run(dialogue, _callback(dialogue, "category:medium"))

        texts = fake_max.texts(CHAT_ID)
        assert texts[1:4] == [
            "Розы 25 шт\n4 990 ₽\n+ бесплатная доставка",
            "Букет Прованс\n4 290 ₽\n+ бесплатная доставка",
            "Гортензии 3 шт\n5 490 ₽\n+ бесплатная доставка",
        ]
        assert texts[-1] == messages.NO_MORE_PRODUCTS

    def test_nothing_sent(self, dialogue, fake_max, images):
        images.download.side_effect = ProductImageError("cdn down")
        send_message = fake_max.send_message

        async def failing_cards(text, chat_id=None, user_id=None):
            if "бесплатная доставка" in text:
                raise MaxApiError("MAX unavailable", status_code=503)
            return await send_message(text, chat_id=chat_id, user_id=user_id)

        fake_max.send_message = failing_cards

        _run(dialogue, _callback(dialogue, "category:boxes"))

        assert fake_max.texts(CHAT_ID)[1:] == [messages.PRODUCTS_UNAVAILABLE, messages.NO_MORE_PRODUCTS]

    def test_empty_category(self, dialogue, fake_max, tmp_path):
        path = tmp_path / "catalog.yaml"
        path.write_text("categories:\n  - key: spring\n    name: Весна\n", encoding="utf-8")
        dialogue.catalog = CatalogService(path)

        _run(dialogue, _callback(dialogue, "category:spring"))

        assert fake_max.texts(CHAT_ID) == [messages.NO_PRODUCTS]
        assert fake_max.sent[0]["buttons"][0][0]["payload"] == "category:spring"

    def test_unknown_category(self, dialogue, fake_max):
        _run(dialogue, _callback(dialogue, "category:missing"))

        assert fake_max.texts(CHAT_ID)[-1] == messages.CATEGORIES

    def test_unknown_action(self, dialogue, fake_max):
        _run(dialogue, _callback(dialogue, "unknown:1"))

        assert fake_max.sent == []
        assert fake_max.callbacks_answered == ["cb-1"]


class TestContactManager:
    def test_task_and_transfer(self, dialogue, fake_max, fake_amo):
        contact = fake_amo.add_contact("Иван", max_id=USER_ID)
        fake_amo.add_lead(contact["id"], lead_id=90, responsible_user_id=5)

        _run(dialogue, _callback(dialogue, "contact_manager"))

        assert fake_max.texts(CHAT_ID) == [messages.CONTACT_MANAGER]
        assert fake_amo.tasks[0]["lead_id"] == 90
        assert dialogue.analytics.get_statistics()["conversations"]["transferred_to_manager"] == 1

"""Текстовые сводки заказа для клиента, администратора и чата amoCRM."""

from typing import Optional

from app.schemas.order import CompletedOrder

EXACT_TIME_SURCHARGE = "+350₽"


def _dash(value: Optional[str]) -> str:
    return value or "—"


def time_text(order: CompletedOrder) -> str:
    if order.exact_time_value:
        return f"Точно в {order.exact_time_value} ({EXACT_TIME_SURCHARGE})"
    return order.time


def _fulfillment_labels(order: CompletedOrder) -> tuple[str, str]:
    if order.is_pickup:
        return "Самовывоз", "Филиал"
    return "Доставка", "Адрес"


def _has_recipient(order: CompletedOrder) -> bool:
    return not order.is_pickup and bool(order.recipient_name or order.recipient_phone)


def session_summary(order: CompletedOrder) -> str:
    return f"""📋 *Ваш заказ:*

📅 Дата: {_dash(order.date)}
🕐 Время: {_dash(time_text(order))}
📍 Адрес: {_dash(order.address)}
💌 Открытка: {order.card_text or "Без подписи"}

👤 Заказчик: {_dash(order.your_name)}
📱 Телефон: {_dash(order.your_phone)}

🎁 Получатель: {_dash(order.recipient_name)}
📱 Телефон: {_dash(order.recipient_phone)}"""


def chat_order_for_manager(order: CompletedOrder, chat_id: str, user_id: str) -> str:
    body = session_summary(order).replace("📋 *Ваш заказ:*", "🌸 *НОВЫЙ ЗАКАЗ*", 1)
    return f"{body}\n\n---\nChat ID: {chat_id}\nUser ID: {user_id}"


def _form_lines(order: CompletedOrder, bold: bool) -> str:
    type_label, location_label = _fulfillment_labels(order)

    def label(text: str) -> str:
        return f"*{text}:*" if bold else f"{text}:"

    text = (
        f"📦 {label('Способ')} {type_label}\n"
        f"📅 {label('Дата')} {order.date}\n"
        f"🕐 {label('Время')} {time_text(order)}\n"
        f"📍 {label(location_label)} {order.address}\n"
        f"💌 {label('Открытка')} {order.card_text or 'Без подписи'}\n"
        f"\n"
        f"👤 {label('Заказчик')} {order.your_name}\n"
        f"📱 {label('Телефон')} {order.your_phone}"
    )
    if _has_recipient(order):
        text += (
            f"\n\n🎁 {label('Получатель')} {order.recipient_name or 'Не указан'}\n"
            f"📱 {label('Телефон')} {order.recipient_phone or 'Не указан'}"
        )
    return text


def web_order_ack(order: CompletedOrder) -> str:
    return (
        f"🎉 *Заказ принят!*\n\n{_form_lines(order, bold=True)}\n\n"
        "Наш менеджер свяжется с вами для подтверждения.\n\n"
        "Спасибо, что выбрали нас! 🌸"
    )


def web_order_for_manager(order: CompletedOrder, chat_id: str, user_id: str) -> str:
    return (
        f"🌸 *НОВЫЙ ЗАКАЗ (веб-форма)*\n\n{_form_lines(order, bold=False)}"
        f"\n\n---\nChat ID: {chat_id}\nUser ID: {user_id}"
    )


def order_for_amo_chat(order: CompletedOrder, source: str = "веб-форма") -> str:
    return f"🌸 НОВЫЙ ЗАКАЗ ({source})\n\n{_form_lines(order, bold=False)}"


def crm_form_order_for_manager(order: CompletedOrder, deal_id: int) -> str:
    type_label, _ = _fulfillment_labels(order)
    return f"""🌸 *ЗАКАЗ ИЗ amoCRM ФОРМЫ*

📦 Способ: {type_label}
📅 Дата: {order.date}
🕐 Время: {time_text(order)}
📍 Адрес: {order.address}
💌 Открытка: {order.card_text or "Без подписи"}

👤 Заказчик: {order.your_name}
📱 Телефон: {order.your_phone}

---
Сделка amoCRM: #{deal_id}"""

"""Тексты бота и клавиатуры MAX.

Кнопка callback несёт payload вида "action:value:param".
"""

GREETING = (
    "Здравствуйте! 🌸 Это цветочная мастерская Orange.\n\n"
    "Поможем выбрать букет и оформим доставку по Самаре. Что вас интересует?"
)
BOT_ENABLED = "Бот снова включён 🌸 Чем можем помочь?"
BOT_DISABLED = "Бот отключён для этого диалога. Для включения используйте /start"
ERROR = "Произошла ошибка. Попробуйте позже или свяжитесь с менеджером."
CATEGORIES = "Выберите категорию букетов:"
NO_MORE_PRODUCTS = "Это все букеты категории. Оформите заказ на сайте или прямо здесь, в чате 👇"
NO_PRODUCTS = "В этой категории пока нет букетов. Выберите другую:"
PRODUCTS_UNAVAILABLE = "Не удалось загрузить букеты. Попробуйте позже."
CONTACT_MANAGER = "Передали ваш запрос менеджеру. Он свяжется с вами в ближайшее время 🙌"
ADMIN_ONLY = "Эта команда доступна только администратору."

HELP = """Команды бота:

/start - Включить бота
/stop - Отключить бота для этого диалога
/help - Показать справку

Для администратора:
/stats - Показать статистику
/broadcast текст - Рассылка всем пользователям

Просто напишите что вас интересует, и я помогу подобрать букет или отвечу на вопросы!"""

BROADCAST_USAGE = "Укажите текст рассылки.\n\nПример: /broadcast Акция! Скидка 20% на все букеты!"
BROADCAST_NO_RECIPIENTS = "Нет пользователей для рассылки."

ORDER_START = "Оформим заказ 🌸 Ответьте на несколько вопросов."
ORDER_ASK_DATE = "📅 На какую дату нужна доставка? Напишите в формате ДД.ММ.ГГГГ"
ORDER_ASK_TIME = "🕐 Выберите удобное время доставки:"
ORDER_ASK_EXACT_TIME = "⏰ Напишите точное время доставки, например 14:30 (доплата 350₽)"
ORDER_ASK_ADDRESS = "📍 Напишите адрес доставки: улица, дом, квартира"
ORDER_ASK_CARD_TEXT = "💌 Какой текст написать в открытке?"
ORDER_ASK_YOUR_NAME = "👤 Как вас зовут?"
ORDER_ASK_YOUR_PHONE = "📱 Ваш номер телефона для связи:"
ORDER_ASK_RECIPIENT_NAME = "🎁 Как зовут получателя?"
ORDER_ASK_RECIPIENT_PHONE = "📱 Номер телефона получателя:"
ORDER_CONFIRM = "Всё верно?"
ORDER_INVALID_PHONE = "⚠️ Введите корректный номер телефона (минимум 10 цифр)"
ORDER_SUCCESS = "✅ Заказ оформлен! Менеджер свяжется с вами для подтверждения и оплаты. Спасибо! 🌸"
ORDER_CANCELLED = "Заказ отменён. Если передумаете, мы всегда рядом 🌸"


def callback_button(text: str, payload: str) -> dict:
    return {"type": "callback", "text": text, "payload": payload}


def link_button(text: str, url: str) -> dict:
    return {"type": "link", "text": text, "url": url}


MAIN_MENU = [
    [callback_button("💐 Каталог букетов", "menu:catalog")],
    [callback_button("📝 Оформить заказ", "order")],
    [callback_button("👩‍💼 Связаться с менеджером", "contact_manager")],
]

ORDER_CANCEL = [[callback_button("❌ Отменить заказ", "order_cancel")]]

ORDER_TIME = [
    [callback_button("Утро (9:00-12:00)", "order_time:morning")],
    [callback_button("День (12:00-17:00)", "order_time:afternoon")],
    [callback_button("Вечер (17:00-21:00)", "order_time:evening")],
    [callback_button("⏰ Точное время (+350₽)", "order_time:exact")],
    [callback_button("❌ Отменить заказ", "order_cancel")],
]

ORDER_ADDRESS = [
    [callback_button("❓ Узнать у получателя", "order_ask_address")],
    [callback_button("❌ Отменить заказ", "order_cancel")],
]

ORDER_SKIP_CARD = [
    [callback_button("Без подписи", "order_skip:cardText")],
    [callback_button("❌ Отменить заказ", "order_cancel")],
]

ORDER_CONFIRM_BUTTONS = [
    [callback_button("✅ Подтвердить", "order_confirm")],
    [callback_button("❌ Отменить", "order_cancel")],
]


def category_buttons(categories: list) -> list[list[dict]]:
    rows = [[callback_button(f"{category.emoji} {category.name}", f"category:{category.key}")] for category in categories]
    rows.append([callback_button("⬅️ Назад", "back:main")])
    return rows


def after_category_buttons(order_url: str) -> list[list[dict]]:
    return [
        [link_button("🛒 Оформить на сайте", order_url)],
        [callback_button("📝 Оформить в чате", "order")],
        [callback_button("⬅️ К категориям", "back:catalog")],
    ]


def products_shown(shown: int, total: int) -> str:
    return f"Показано {shown} из {total}"


def after_products_buttons(category_key: str, next_offset, order_url: str) -> list[list[dict]]:
    rows = []
    if next_offset is not None:
        rows.append([callback_button("➡️ Показать ещё", f"more:{category_key}:{next_offset}")])
    return rows + after_category_buttons(order_url)

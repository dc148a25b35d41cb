import logging

from telegram import InlineKeyboardButton, InlineKeyboardMarkup

logger = logging.getLogger("personabot.notify")

BUY_PREFIX = 'buy:'


def plans_keyboard(plans) -> InlineKeyboardMarkup:
    rows = [
        [InlineKeyboardButton(text=f"{p.title} - {p.price_str}", callback_data=f"{BUY_PREFIX}{p.id}")]
        for p in plans
    ]
    return InlineKeyboardMarkup(rows)


def pay_keyboard(url: str, label: str = "Pagar agora") -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup([[InlineKeyboardButton(text=label, url=url)]])


class TelegramNotifier:
    """Pushes messages to a chat outside of a reply context."""

    def __init__(self, bot):
        self.bot = bot

    async def notify(self, session_id: int, text: str, *, plans=None, pay_url: str | None = None,
                     photo: str | None = None):
        markup = None
        if plans:
            markup = plans_keyboard(plans)
        elif pay_url:
            markup = pay_keyboard(pay_url)
        if photo:
            await self.bot.send_photo(chat_id=session_id, photo=photo, caption=text, reply_markup=markup)
        else:
            await self.bot.send_message(chat_id=session_id, text=text, reply_markup=markup)

    async def notify_admin(self, admin_chat_id: int, text: str):
        if not admin_chat_id:
            return
        try:
            await self.bot.send_message(chat_id=admin_chat_id, text=text)
        except Exception as e:
            logger.warning(f"Admin notify error: {e}")

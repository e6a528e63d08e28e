import logging
import threading
from typing import Optional

import telebot
from telebot.types import CallbackQuery, Message

from .router import CommandRouter

logger = logging.getLogger(__name__)

LONG_POLL_TIMEOUT = 25


def create_bot(token: str) -> telebot.TeleBot:
    return telebot.TeleBot(token, threaded=True, num_threads=4)


class TelegramBot:
    """Feeds telebot updates into the command router and runs long polling in a thread"""

    def __init__(self, bot: telebot.TeleBot, router: CommandRouter):
        self.bot = bot
        self.router = router
        self._thread: Optional[threading.Thread] = None
        self._register_handlers()

    def _register_handlers(self):
        @self.bot.message_handler(content_types=['text'])
        def _text(m: Message):
            self.router.handle_message(m.from_user.id, m.chat.id, m.text or '')

        @self.bot.callback_query_handler(func=lambda c: True)
        def _callback(cq: CallbackQuery):
            chat_id = cq.message.chat.id if cq.message else cq.from_user.id
            self.router.handle_callback(cq.from_user.id, chat_id, cq.id, cq.data or '')

    def _poll(self):
        logger.info("Telegram polling started")
        self.bot.infinity_polling(timeout=LONG_POLL_TIMEOUT, long_polling_timeout=LONG_POLL_TIMEOUT,
                                  allowed_updates=['message', 'callback_query'])
        logger.info("Telegram polling stopped")

    def start(self):
        self._thread = threading.Thread(target=self._poll, name='telegram-polling', daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 0.5):
        self.bot.stop_polling()
        if self._thread is not None:
            self._thread.join(timeout)

import logging
import time
from typing import Optional, Sequence

import requests
import telebot
from telebot.apihelper import ApiException
from telebot.types import InlineKeyboardButton, InlineKeyboardMarkup

from ..errors import ChatError
from ..models import Button

logger = logging.getLogger(__name__)

Keyboard = Optional[Sequence[Sequence[Button]]]


class ChatTransport:
    """Minimal chat API used by the session manager and the router"""

    def send_message(self, chat_id: int, text: str, keyboard: Keyboard = None) -> int:
        raise NotImplementedError

    def edit_message(self, chat_id: int, message_id: int, text: str, keyboard: Keyboard = None):
        raise NotImplementedError

    def delete_message(self, chat_id: int, message_id: int):
        raise NotImplementedError

    def answer_callback(self, callback_id: str, text: str = '', show_alert: bool = False):
        raise NotImplementedError


def build_markup(keyboard: Keyboard) -> Optional[InlineKeyboardMarkup]:
    if not keyboard:
        return None
    markup = InlineKeyboardMarkup()
    for row in keyboard:
        markup.row(*[InlineKeyboardButton(text=b.label, callback_data=b.callback_data) for b in row])
    return markup


class TelebotTransport(ChatTransport):
    """ChatTransport on top of pyTelegramBotAPI, retrying transient failures"""

    def __init__(self, bot: telebot.TeleBot, retries: int = 3, retry_delay: float = 1.0):
        self.bot = bot
        self.retries = retries
        self.retry_delay = retry_delay

    def _call(self, action: str, func, *args, **kwargs):
        for attempt in range(1, self.retries + 1):
            try:
                return func(*args, **kwargs)
            except (ApiException, requests.RequestException) as e:
                error = ChatError(f"{action} failed: {e}", cause=e)
            if error.not_modified or not error.retryable or attempt == self.retries:
                raise error
            logger.debug("%s attempt %d/%d failed, retrying: %s", action, attempt, self.retries, error)
            time.sleep(self.retry_delay * attempt)

    def send_message(self, chat_id: int, text: str, keyboard: Keyboard = None) -> int:
        message = self._call('send', self.bot.send_message, chat_id, text,
                             reply_markup=build_markup(keyboard), disable_web_page_preview=True)
        return message.message_id

    def edit_message(self, chat_id: int, message_id: int, text: str, keyboard: Keyboard = None):
        self._call('edit', self.bot.edit_message_text, text, chat_id=chat_id, message_id=message_id,
                   reply_markup=build_markup(keyboard), disable_web_page_preview=True)

    def delete_message(self, chat_id: int, message_id: int):
        self._call('delete', self.bot.delete_message, chat_id, message_id)

    def answer_callback(self, callback_id: str, text: str = '', show_alert: bool = False):
        self._call('answer', self.bot.answer_callback_query, callback_id, text=text or None, show_alert=show_alert)

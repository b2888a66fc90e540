"""
Delivery Notifier
Telegram delivery of fulfilled content, files and follow-up buttons.

Called only after fulfillment state is committed. Failures are logged and reported
as False; they never propagate into the dispatcher or the lease monitor.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence
from telegram import Bot, InlineKeyboardButton, InlineKeyboardMarkup
from config import Config
from database import SessionLocal
from models import User
from utils.exception_handler import notifier_safe

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Attachment:
    """A file delivered by reference"""
    url: str
    caption: Optional[str] = None


@dataclass(frozen=True)
class NotifyButton:
    text: str
    url: Optional[str] = None
    callback_data: Optional[str] = None

    def to_telegram(self) -> InlineKeyboardButton:
        if self.url:
            return InlineKeyboardButton(self.text, url=self.url)
        return InlineKeyboardButton(self.text, callback_data=self.callback_data or self.text)


def split_message(text: str, limit: int) -> List[str]:
    """Split text into chunks of at most limit characters, preferring line boundaries"""
    if len(text) <= limit:
        return [text]

    chunks: List[str] = []
    current = ""
    for line in text.split("\n"):
        while len(line) > limit:
            if current:
                chunks.append(current)
                current = ""
            chunks.append(line[:limit])
            line = line[limit:]
        candidate = f"{current}\n{line}" if current else line
        if len(candidate) > limit:
            chunks.append(current)
            current = line
        else:
            current = candidate
    if current:
        chunks.append(current)
    return chunks


def shop_buttons(review_ref: Optional[str] = None) -> List[NotifyButton]:
    """Standard follow-up keyboard: leave a review, back to the shop"""
    buttons = []
    if review_ref:
        buttons.append(NotifyButton("⭐ Leave a review", callback_data=f"review_start:{review_ref}"))
    if Config.WEBAPP_URL:
        buttons.append(NotifyButton("🛍 Back to the shop", url=Config.WEBAPP_URL))
    return buttons


class TelegramDeliveryNotifier:
    """Delivery Notifier backed by the Telegram Bot API"""

    def __init__(self, bot: Optional[Bot] = None):
        self._bot = bot

    @property
    def bot(self) -> Optional[Bot]:
        if self._bot is None and Config.BOT_TOKEN:
            self._bot = Bot(token=Config.BOT_TOKEN)
        return self._bot

    @staticmethod
    def _chat_id_for(user_id: int) -> Optional[int]:
        session = SessionLocal()
        try:
            user = session.get(User, user_id)
            return user.telegram_id if user else None
        finally:
            session.close()

    @notifier_safe
    async def notify(
        self,
        user_id: int,
        text: str,
        attachments: Sequence[Attachment] = (),
        buttons: Sequence[NotifyButton] = (),
    ) -> bool:
        """Send text (chunked), then each attachment. Buttons go on the last text chunk."""
        bot = self.bot
        if bot is None:
            logger.warning(f"📭 NOTIFY_SKIPPED: BOT_TOKEN not configured (user {user_id})")
            return False

        chat_id = self._chat_id_for(user_id)
        if not chat_id:
            logger.warning(f"📭 NOTIFY_SKIPPED: user {user_id} has no telegram chat")
            return False

        markup = None
        if buttons:
            markup = InlineKeyboardMarkup([[button.to_telegram()] for button in buttons])

        chunks = split_message(text, Config.TELEGRAM_MESSAGE_LIMIT) if text else []
        for index, chunk in enumerate(chunks):
            is_last = index == len(chunks) - 1
            # Plain text: stock content is arbitrary and chunk sizes must stay exact
            await bot.send_message(
                chat_id=chat_id,
                text=chunk,
                reply_markup=markup if is_last else None,
                disable_web_page_preview=True,
            )

        sent_files = 0
        for attachment in attachments:
            try:
                await bot.send_document(
                    chat_id=chat_id,
                    document=attachment.url,
                    caption=attachment.caption,
                )
                sent_files += 1
            except Exception as e:
                logger.error(f"❌ NOTIFY_FILE_FAILED: user {user_id} file {attachment.url}: {e}")

        logger.info(
            f"📨 NOTIFIED: user {user_id} ({len(chunks)} messages, {sent_files}/{len(attachments)} files)"
        )
        return sent_files == len(attachments)


delivery_notifier = TelegramDeliveryNotifier()

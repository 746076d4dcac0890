from __future__ import annotations

"""Telegram alert transport and command listener."""

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional

from telegram import Bot, BotCommand
from telegram.error import TelegramError
from telegram.request import HTTPXRequest

from motionbot.errors import TransportError

logger = logging.getLogger(__name__)

CommandHandler = Callable[[str], Awaitable[Optional[str]]]

_TIMEOUTS = {
    "pool_timeout": 30.0,
    "connect_timeout": 10.0,
    "read_timeout": 30.0,
    "write_timeout": 30.0,
}


@dataclass
class TelegramEvent:
    """Normalized inbound Telegram message."""

    text: str
    chat_id: str
    message_id: Optional[int] = None


@dataclass
class RegisteredCommand:
    name: str
    handler: CommandHandler
    description: str

    @property
    def telegram_name(self) -> str:
        # Bot API command names allow only lowercase letters, digits and underscores.
        return self.name.replace("-", "_")


def normalize_command(token: str) -> str:
    """Map `/set_threshold@MyBot`, `set_threshold` and `set-threshold` to one name."""
    name = token.strip().lower().lstrip("/")
    name = name.split("@", 1)[0]
    return name.replace("_", "-")


class TelegramNotifier:
    """Send photos/text to one chat and dispatch commands coming from it."""

    def __init__(self, bot_token: str, chat_id: str, bot: Optional[Bot] = None) -> None:
        self.chat_id = str(chat_id).strip()
        if bot is None:
            request = HTTPXRequest(
                connection_pool_size=20,
                pool_timeout=30.0,
                connect_timeout=10.0,
                read_timeout=30.0,
                write_timeout=30.0,
            )
            bot = Bot(token=bot_token, request=request)
        self.bot = bot
        self._commands: Dict[str, RegisteredCommand] = {}
        self._update_offset = 0
        self._listener: Optional[asyncio.Task] = None

    @property
    def commands(self) -> Dict[str, RegisteredCommand]:
        return dict(self._commands)

    def register_command(self, name: str, handler: CommandHandler, description: str = "") -> None:
        """Register `handler(args) -> reply` for `/name`; must happen before `launch`."""
        key = normalize_command(name)
        self._commands[key] = RegisteredCommand(name=key, handler=handler, description=description or key)

    async def launch(self) -> None:
        """Validate the token, publish the command menu and start polling."""
        if self._listener is not None:
            return
        try:
            await self.bot.initialize()
            me = await self.bot.get_me()
        except TelegramError as exc:
            raise TransportError("Telegram token validation failed. Please check your bot token.") from exc
        logger.info("Telegram bot validated: @%s (%s)", me.username, me.first_name)

        try:
            await self.bot.set_my_commands(
                [BotCommand(command.telegram_name, command.description) for command in self._commands.values()]
            )
        except TelegramError as exc:
            logger.warning("Could not publish bot command list: %s", exc)

        self._listener = asyncio.create_task(self._poll_updates(), name="telegram-command-listener")

    async def send_text(self, text: str) -> None:
        try:
            await self.bot.send_message(chat_id=self.chat_id, text=text, **_TIMEOUTS)
        except TelegramError as exc:
            raise TransportError(f"Telegram message failed: {exc}") from exc

    async def send_photo(self, data: bytes, caption: str) -> int:
        """Send one JPEG and return the Telegram message id."""
        try:
            message = await self.bot.send_photo(chat_id=self.chat_id, photo=data, caption=caption, **_TIMEOUTS)
        except TelegramError as exc:
            raise TransportError(f"Telegram photo failed: {exc}") from exc
        return int(getattr(message, "message_id", 0) or 0)

    async def handle_event(self, event: TelegramEvent) -> Optional[str]:
        """Run the matching command handler and send its reply, if any."""
        parts = event.text.strip().split(maxsplit=1)
        if not parts:
            return None
        command = self._commands.get(normalize_command(parts[0]))
        if command is None:
            return None

        args = parts[1] if len(parts) > 1 else ""
        reply = await command.handler(args)
        if reply:
            try:
                await self.send_text(reply)
            except TransportError as exc:
                logger.error("Reply to %s failed: %s", command.name, exc)
        return reply

    async def _poll_updates(self) -> None:
        # Restrict command handling to the configured chat for safety.
        allowed_chat = self.chat_id
        while True:
            try:
                updates = await self.bot.get_updates(
                    offset=self._update_offset,
                    timeout=25,
                    allowed_updates=["message"],
                )
            except Exception:
                logger.exception("Telegram command poll failed")
                await asyncio.sleep(2.0)
                continue

            for update in updates:
                self._update_offset = int(update.update_id) + 1
                message = getattr(update, "message", None)
                if message is None:
                    continue
                text = (getattr(message, "text", None) or "").strip()
                incoming_chat = str(getattr(message, "chat_id", "")).strip()
                if not text or incoming_chat != allowed_chat:
                    continue
                event = TelegramEvent(
                    text=text,
                    chat_id=incoming_chat,
                    message_id=int(getattr(message, "message_id", 0) or 0) or None,
                )
                # Handled inline: a slow reply delays the next poll, and commands run one at a time.
                try:
                    await self.handle_event(event)
                except Exception:
                    logger.exception("Command handling failed for %r", text)

    async def close(self) -> None:
        """Stop polling and release the HTTP pool."""
        if self._listener is not None:
            self._listener.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._listener
            self._listener = None
        with contextlib.suppress(TelegramError):
            await self.bot.shutdown()

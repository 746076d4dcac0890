from __future__ import annotations

"""Print the chat ids of recent messages sent to the bot.

Send any message to the bot from the chat that should receive alerts, then run
this script and copy the id into TELEGRAM_CHAT_ID.
"""

import argparse
import asyncio
import sys
from pathlib import Path

from telegram import Bot

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from motionbot.config import read_setting  # noqa: E402


async def _collect_chats(token: str) -> dict[int, str]:
    chats: dict[int, str] = {}
    async with Bot(token=token) as bot:
        for update in await bot.get_updates(timeout=5, allowed_updates=["message"]):
            message = update.message
            if message is None:
                continue
            chat = message.chat
            chats[chat.id] = chat.title or chat.username or chat.first_name or ""
    return chats


def main() -> int:
    parser = argparse.ArgumentParser(description="Print chat ids of recent messages sent to the bot.")
    parser.add_argument("--secrets", default=str(PROJECT_ROOT / ".secrets"))
    args = parser.parse_args()

    token = read_setting("TELEGRAM_BOT_TOKEN", args.secrets)
    if not token:
        print("TELEGRAM_BOT_TOKEN is not set in the environment or secrets file.", file=sys.stderr)
        return 1

    chats = asyncio.run(_collect_chats(token))
    if not chats:
        print("No messages found. Send the bot a message and run again.")
        return 0
    for chat_id, name in chats.items():
        print(f"Chat ID: {chat_id}\t{name}")
    return 0


if __name__ == "__main__":
    sys.exit(main())

"""
Telegram bot entrypoint built with aiogram 3.

- /start, /status, /token <value>
- buttons: start polling, stop, status
- middleware that only lets the admin chat through
- without BOT_TOKEN the poller runs headless until it stops

Основной модуль Telegram-бота: кнопки запуска, остановки и статуса,
команда /token для замены токена, доступ только для админа.
"""

from __future__ import annotations

import asyncio
import json
import logging
from html import escape
from typing import Any, Awaitable, Callable, Dict

from aiogram import BaseMiddleware, Bot, Dispatcher, F
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode
from aiogram.filters import Command, CommandObject
from aiogram.types import (
    CallbackQuery,
    InlineKeyboardButton,
    InlineKeyboardMarkup,
    Message,
)

from .config import Settings, get_settings
from .gateway import SlotGateway
from .models import StatusSnapshot
from .monitor import MonitorService
from .utils import setup_logging


logger = logging.getLogger(__name__)


class AdminOnlyMiddleware(BaseMiddleware):
    """Allow only admin user to interact with bot."""

    def __init__(self, admin_chat_id: int) -> None:
        super().__init__()
        self.admin_chat_id = admin_chat_id

    async def __call__(
        self,
        handler: Callable[[Message, Dict[str, Any]], Awaitable[Any]],
        event: Message,
        data: Dict[str, Any],
    ) -> Any:
        if getattr(event, "chat", None) and event.chat.id != self.admin_chat_id:
            await event.answer("This bot only answers its owner.")
            return
        return await handler(event, data)


def render_status(snapshot: StatusSnapshot) -> str:
    """HTML status message for the admin chat."""
    text = (
        f"📊 <b>Rescheduler status</b>\n"
        f"Polling: {'active' if snapshot.polling else 'stopped'}\n"
        f"Rescheduling: {'in progress' if snapshot.rescheduling else 'idle'}\n"
        f"Ticks: {snapshot.ticks_count}\n"
        f"Reschedule attempts: {snapshot.attempts_total}\n"
    )
    if snapshot.last_tick_at:
        text += f"Last tick: {snapshot.last_tick_at:%Y-%m-%d %H:%M:%S} UTC\n"
    if snapshot.scheduled_slot_id is not None:
        text += f"Rescheduled onto slot: <b>{escape(str(snapshot.scheduled_slot_id))}</b>\n"
    if snapshot.last_error:
        text += f"Last error: <code>{escape(snapshot.last_error)}</code>\n"
    if snapshot.configuration:
        config_json = json.dumps(snapshot.configuration, indent=2, ensure_ascii=False)
        text += f"\n<pre>{escape(config_json)}</pre>"
    return text


def build_monitor(settings: Settings, on_text: Callable[[str], Awaitable[None]] | None = None) -> MonitorService:
    gateway = SlotGateway(
        settings.identity,
        base_url=settings.api.base_url,
        timeout=settings.api.request_timeout,
    )
    kwargs: Dict[str, Any] = {}
    if on_text is not None:
        kwargs["on_text"] = on_text
    return MonitorService(
        gateway=gateway,
        settings=settings.scheduler,
        configuration=settings.public_view(),
        **kwargs,
    )


def main() -> None:
    """Entry point for running the rescheduler."""
    settings = get_settings()
    setup_logging(settings.logging)

    if settings.bot is None:
        logger.info("BOT_TOKEN not set, running headless")
        asyncio.run(_run_headless(build_monitor(settings)))
        return

    admin_chat_id = settings.bot.admin_chat_id
    bot = Bot(
        settings.bot.token,
        default=DefaultBotProperties(parse_mode=ParseMode.HTML),
    )
    dp = Dispatcher()

    monitor = build_monitor(
        settings,
        on_text=lambda text: _notify_admin_text(bot, admin_chat_id, text),
    )

    dp.message.middleware(AdminOnlyMiddleware(admin_chat_id))

    # region keyboards
    def main_keyboard() -> InlineKeyboardMarkup:
        return InlineKeyboardMarkup(
            inline_keyboard=[
                [InlineKeyboardButton(text="▶️ Start polling", callback_data="start_polling")],
                [InlineKeyboardButton(text="⏹ Stop", callback_data="stop_polling")],
                [InlineKeyboardButton(text="ℹ️ Status", callback_data="status")],
            ]
        )

    # endregion

    @dp.startup()
    async def on_startup() -> None:
        await monitor.start()

    @dp.message(Command("start"))
    async def cmd_start(message: Message) -> None:
        await message.answer(
            "👋 Appointment rescheduler.\n\n"
            "Use the buttons to control polling. "
            "/status shows the current state, /token &lt;value&gt; replaces the API token.",
            reply_markup=main_keyboard(),
        )

    @dp.message(Command("status"))
    async def cmd_status(message: Message) -> None:
        await message.answer(render_status(monitor.snapshot()), reply_markup=main_keyboard())

    @dp.message(Command("token"))
    async def cmd_token(message: Message, command: CommandObject) -> None:
        token = (command.args or "").strip()
        if not token:
            await message.answer("Usage: /token &lt;value&gt;")
            return
        monitor.gateway.rotate_token(token)
        try:
            await message.delete()
        except Exception as e:  # noqa: BLE001
            logger.warning("Failed to delete token message: %s", e)
        await message.answer("🔑 Token updated, next requests will use it.")

    @dp.callback_query(F.data == "start_polling")
    async def on_start_polling(callback: CallbackQuery) -> None:
        await callback.answer()
        await monitor.start()
        await callback.message.edit_text(
            render_status(monitor.snapshot()), reply_markup=main_keyboard()
        )

    @dp.callback_query(F.data == "stop_polling")
    async def on_stop_polling(callback: CallbackQuery) -> None:
        await callback.answer()
        await monitor.stop()
        await callback.message.edit_text(
            render_status(monitor.snapshot()), reply_markup=main_keyboard()
        )

    @dp.callback_query(F.data == "status")
    async def on_status(callback: CallbackQuery) -> None:
        await callback.answer()
        await callback.message.edit_text(
            render_status(monitor.snapshot()), reply_markup=main_keyboard()
        )

    logger.info("Starting bot polling")
    asyncio.run(_run_polling(dp, bot, monitor))


async def _run_headless(monitor: MonitorService) -> None:
    try:
        await monitor.start()
        await monitor.wait_stopped()
    finally:
        await monitor.stop()
        await monitor.gateway.close()


async def _run_polling(dp: Dispatcher, bot: Bot, monitor: MonitorService) -> None:
    try:
        await dp.start_polling(bot)
    finally:
        await monitor.stop()
        await monitor.gateway.close()
        await bot.session.close()


async def _notify_admin_text(bot: Bot, admin_chat_id: int, text: str) -> None:
    try:
        await bot.send_message(chat_id=admin_chat_id, text=text)
    except Exception as e:  # noqa: BLE001
        logger.warning("Failed to send text notification: %s", e)


if __name__ == "__main__":
    main()

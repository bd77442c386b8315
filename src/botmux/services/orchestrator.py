"""Host-facing facade over every platform adapter.

The host registers commands and listeners here, and never talks to an
adapter directly. Inbound events are enriched with the sender's
:class:`UnifiedUser` before the host sees them.
"""

import logging
from typing import Any, Callable, Iterable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from botmux.models.command import Command
from botmux.models.database import async_session
from botmux.models.interaction import Interaction
from botmux.models.user import UnifiedUser
from botmux.platforms.base import PlatformAdapter
from botmux.services import user_service
from botmux.services.command_registry import CommandRegistry
from botmux.services.events import BotEvent, EventDispatcher

logger = logging.getLogger(__name__)


class Orchestrator:
    def __init__(
        self,
        registry: CommandRegistry | None = None,
        adapters: Iterable[PlatformAdapter] = (),
        session_factory: async_sessionmaker[AsyncSession] = async_session,
    ) -> None:
        self.registry = registry or CommandRegistry()
        self.events = EventDispatcher()
        self.session_factory = session_factory
        self.adapters: list[PlatformAdapter] = []
        for adapter in adapters:
            self.add_adapter(adapter)

    def add_adapter(self, adapter: PlatformAdapter) -> None:
        self.adapters.append(adapter)
        adapter.events.subscribe(BotEvent.READY, self._on_ready)
        adapter.events.subscribe(BotEvent.COMMAND_RECEIVED, self._on_command)
        adapter.events.subscribe(BotEvent.TEXT_RECEIVED, self._on_text)

    def adapter(self, platform: str) -> PlatformAdapter | None:
        for adapter in self.adapters:
            if adapter.name == platform:
                return adapter
        return None

    # ── Registration ───────────────────────────────────────

    def register_command(self, command: Command) -> bool:
        return self.registry.register(command)

    def register_command_handler(self, handler: Callable[[Interaction], Any]) -> None:
        self.events.subscribe(BotEvent.COMMAND_RECEIVED, handler)

    def register_text_handler(self, handler: Callable[[Interaction], Any]) -> None:
        self.events.subscribe(BotEvent.TEXT_RECEIVED, handler)

    def register_ready_handler(self, handler: Callable[[PlatformAdapter], Any]) -> None:
        self.events.subscribe(BotEvent.READY, handler)

    def register_user_update_handler(self, handler: Callable[[UnifiedUser], Any]) -> None:
        self.events.subscribe(BotEvent.USER_UPDATED, handler)

    # ── Lifecycle ──────────────────────────────────────────

    async def start(self) -> None:
        for adapter in self.adapters:
            try:
                await adapter.start()
            except Exception:
                # 한 플랫폼이 실패해도 나머지는 계속 띄운다
                logger.exception("Failed to start %s adapter", adapter.name)

    async def stop(self) -> None:
        for adapter in self.adapters:
            try:
                await adapter.stop()
            except Exception:
                logger.exception("Failed to stop %s adapter", adapter.name)

    # ── Outbound ───────────────────────────────────────────

    async def log_all(self, message: str, level: int = logging.INFO) -> None:
        for adapter in self.adapters:
            await adapter.log(message, level)

    async def send_status_update(self, text: str) -> None:
        for adapter in self.adapters:
            await adapter.create_or_update_status(text)

    async def send_one_time_status_update(self, text: str, notify: bool = False) -> None:
        for adapter in self.adapters:
            await adapter.send_one_time_status(text, notify)

    async def replace_status_message(self, text: str = "") -> None:
        for adapter in self.adapters:
            await adapter.replace_status(text)

    async def send_to_user(self, user: UnifiedUser | None, text: str) -> None:
        """Send ``text`` to the user's primary account."""
        account = user.primary_account if user is not None else None
        adapter = self.adapter(account.platform) if account is not None else None
        if adapter is None:
            await self.log_all(f"Message to non-registered user: {text}")
            return
        await adapter.send_direct(account.account_id, text)

    async def get_user(self, platform: str, account_id: str) -> UnifiedUser | None:
        async with self.session_factory() as session:
            return await user_service.get_user_by_account(session, platform, account_id)

    # ── Adapter events ─────────────────────────────────────

    async def _on_ready(self, adapter: PlatformAdapter) -> None:
        try:
            await adapter.push_commands()
        except Exception:
            logger.exception("Failed to push commands to %s", adapter.name)
        await self.events.emit(BotEvent.READY, adapter)

    async def _on_command(self, interaction: Interaction) -> None:
        await self._attach_user(interaction)
        await self.events.emit(BotEvent.COMMAND_RECEIVED, interaction)

    async def _on_text(self, interaction: Interaction) -> None:
        await self._attach_user(interaction)
        await self.events.emit(BotEvent.TEXT_RECEIVED, interaction)

    async def _attach_user(self, interaction: Interaction) -> None:
        async with self.session_factory() as session:
            user, changed = await user_service.reconcile_account(
                session, interaction.source.account
            )
        interaction.user = user
        if changed:
            logger.info("User %s changed name or handle", user.uid)
            await self.events.emit(BotEvent.USER_UPDATED, user)

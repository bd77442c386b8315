"""Shared fixtures: in-memory SQLite database and an in-memory platform adapter."""

import logging

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from botmux.models.database import Base

# All models must be imported so Base.metadata knows about them
from botmux.models.user import PlatformAccountLink, UnifiedUser  # noqa: F401
from botmux.models.command import Command, CommandField
from botmux.models.interaction import Interaction, InteractionSource, PlatformAccount
from botmux.platforms.base import PlatformAdapter
from botmux.services.command_registry import CommandRegistry
from botmux.services.events import BotEvent, EventDispatcher
from botmux.services.interaction_engine import AdminPolicy, CommandInvocation, InteractionEngine


@pytest_asyncio.fixture
async def session_factory():
    """Session factory over a fresh in-memory SQLite database for each test."""
    # StaticPool: every session must see the same in-memory database
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def registry():
    """Registry with the demo commands used across tests."""
    registry = CommandRegistry()
    registry.register(Command(name="ping", description="Check the bot is alive"))
    registry.register(
        Command(
            name="greet",
            description="Say hello",
            fields=[CommandField(name="name", required=True)],
        )
    )
    registry.register(
        Command(
            name="book",
            description="Book a table",
            fields=[
                CommandField(name="day", required=True),
                CommandField(name="time", required=True),
                CommandField(name="note"),
            ],
        )
    )
    registry.register(Command(name="fruit", description="Pick a fruit"))
    registry.register(Command(name="shutdown", description="Stop the bot", admin_only=True))
    return registry


class FakeAdapter(PlatformAdapter):
    """Adapter that records what it would have sent."""

    name = "fake"
    max_text_length = 100

    def __init__(self, registry, strict=False, admin_policy=None):
        self.registry = registry
        self.events = EventDispatcher()
        self.engine = InteractionEngine(
            self, registry, strict_commands=strict, admin_policy=admin_policy or AdminPolicy()
        )
        self.replies: list[tuple[Interaction, str]] = []
        self.menus: list[tuple[Interaction, str | None]] = []
        self.removed: list[Interaction] = []
        self.typing: list[Interaction] = []
        self.logs: list[tuple[str, int]] = []
        self.statuses: list[str] = []
        self.one_time: list[tuple[str, bool]] = []
        self.replaced: list[str] = []
        self.direct: list[tuple[str, str]] = []
        self.pushed = 0
        self.started = False

    @property
    def is_ready(self):
        return self.started

    def channel(self, destination_id):
        return None

    async def start(self):
        self.started = True
        await self.events.emit(BotEvent.READY, self)

    async def stop(self):
        self.started = False

    async def push_commands(self):
        self.pushed += 1

    async def log(self, message, level=logging.INFO):
        self.logs.append((message, level))

    async def create_or_update_status(self, text):
        self.statuses.append(text)

    async def send_one_time_status(self, text, notify=False):
        self.one_time.append((text, notify))

    async def replace_status(self, text):
        self.replaced.append(text)

    async def reply(self, interaction, text):
        self.replies.append((interaction, text))

    async def reply_with_options(self, interaction, text):
        self.menus.append((interaction, text))

    async def send_direct(self, account_id, text):
        self.direct.append((account_id, text))

    async def remove_interaction(self, interaction):
        self.removed.append(interaction)
        self.engine.discard(interaction)

    async def show_typing(self, interaction):
        self.typing.append(interaction)

    @property
    def reply_texts(self) -> list[str]:
        return [text for _, text in self.replies]

    def source(
        self,
        text="",
        account_id="u1",
        destination_id="d1",
        handle="@ada",
        name="Ada Lovelace",
        is_direct=True,
    ) -> InteractionSource:
        account = PlatformAccount(self.name, account_id, name, handle, adapter=self)
        return InteractionSource(account, destination_id, text=text, is_direct=is_direct)

    async def say(self, text, **kwargs):
        """Feed one inbound message; ``/name args`` is treated as a command."""
        invocation = None
        if text.startswith("/"):
            name, _, rest = text[1:].partition(" ")
            invocation = CommandInvocation(name.lower(), rest.strip())
        return await self.engine.handle(self.source(text, **kwargs), invocation)


@pytest.fixture
def fake_adapter(registry):
    return FakeAdapter(registry)

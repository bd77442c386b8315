"""Interactions: one logical exchange between a user and the bot.

An interaction may span several physical messages (follow-up questions for
missing command fields, menu answers). Two variants exist, tagged by
``kind``: :class:`CommandInteraction` and :class:`TextInteraction`.
"""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar

from botmux.models.command import Command, CommandField
from botmux.models.menu import MenuChoiceError, ReplyMenu

if TYPE_CHECKING:
    from botmux.models.user import UnifiedUser
    from botmux.platforms.base import PlatformAdapter


@dataclass(frozen=True)
class PlatformAccount:
    """Read-only view of a user account on one platform."""

    platform: str
    account_id: str
    name: str
    handle: str = ""
    adapter: "PlatformAdapter | None" = field(default=None, compare=False, repr=False)


@dataclass
class InteractionSource:
    """Where an interaction came from.

    ``raw`` keeps the platform's own update/message object; the other fields
    are projections the adapter computes from it.
    """

    account: PlatformAccount
    destination_id: str
    text: str = ""
    message_id: str | None = None
    raw: Any = None
    is_direct: bool = False
    thread_id: str | None = None

    @property
    def platform(self) -> str:
        return self.account.platform

    @property
    def username(self) -> str:
        return self.account.handle


class InteractionState(str, Enum):
    CREATED = "created"
    AWAITING_FIELD = "awaiting_field"
    READY = "ready"
    MENU_PRESENTED = "menu_presented"
    MENU_CHOSEN = "menu_chosen"
    REPLIED = "replied"
    ENDED = "ended"


class Interaction:
    kind: ClassVar[str] = ""

    def __init__(self, source: InteractionSource) -> None:
        self.id = uuid.uuid4()
        self.source = source
        self.user: "UnifiedUser | None" = None
        self.menu: ReplyMenu | None = None
        self.processing = True
        self.fields: dict[str, str] = {}
        self.bot_message: Any = None  # last reply the bot sent for this interaction
        self.bot_message_has_menu = False
        self.state = InteractionState.CREATED
        self.last_activity = time.monotonic()

    def __repr__(self) -> str:
        return (
            f"<{type(self).__name__} {self.id} {self.source.platform}:"
            f"{self.source.account.account_id}@{self.source.destination_id} {self.state.value}>"
        )

    @property
    def adapter(self) -> "PlatformAdapter":
        return self.source.account.adapter

    @property
    def key(self) -> tuple[str, str]:
        return (self.source.account.account_id, self.source.destination_id)

    @property
    def ended(self) -> bool:
        return self.state is InteractionState.ENDED

    def touch(self) -> None:
        self.last_activity = time.monotonic()

    async def reply(self, text: str) -> None:
        self.touch()
        await self.adapter.reply(self, text)
        self.processing = False
        if not self.ended:
            self.state = InteractionState.REPLIED

    async def reply_with_options(self, menu: ReplyMenu, text: str | None = None) -> None:
        self.touch()
        self.menu = menu
        await self.adapter.reply_with_options(self, text)
        self.processing = False
        if not self.ended:
            self.state = InteractionState.MENU_PRESENTED

    async def choose_menu_option(self, choice: int | str) -> None:
        """Resolve the presented menu by 1-based position or by key."""
        if self.menu is None:
            raise MenuChoiceError("No menu is waiting for an answer")
        menu = self.menu
        if isinstance(choice, int):
            key = menu.key_for_index(choice)
        elif choice in menu.options:
            key = choice
        else:
            raise MenuChoiceError(f"{choice!r} is not an option of menu {menu.name}")

        self.touch()
        self.menu = None
        self.processing = True
        self.state = InteractionState.MENU_CHOSEN
        await menu.resolve(self, key)

    async def end(self) -> None:
        if self.ended:
            return
        self.state = InteractionState.ENDED
        await self.adapter.remove_interaction(self)


class TextInteraction(Interaction):
    kind: ClassVar[str] = "text"

    @property
    def text(self) -> str:
        return self.source.text


class CommandInteraction(Interaction):
    kind: ClassVar[str] = "command"

    def __init__(
        self,
        source: InteractionSource,
        command: Command,
        fields: dict[str, str] | None = None,
    ) -> None:
        super().__init__(source)
        self.command = command
        self.fields.update(fields or {})
        self.waiting_field: str | None = None
        self.announced = False

    @property
    def missing_fields(self) -> list[CommandField]:
        return [f for f in self.command.required_fields if not self.fields.get(f.name)]

    @property
    def ready(self) -> bool:
        return not self.missing_fields

    def record_answer(self, text: str) -> bool:
        """Store ``text`` as the value of the field we asked for last.

        Returns False when nothing was waiting or a reply is still in flight.
        """
        text = (text or "").strip()
        if not text or not self.waiting_field or self.processing:
            return False
        self.fields[self.waiting_field] = text
        self.waiting_field = None
        self.processing = True
        self.touch()
        return True

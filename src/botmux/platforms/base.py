"""Base platform adapter interface."""

import logging
from abc import ABC, abstractmethod
from typing import ClassVar

from botmux.models.interaction import Interaction
from botmux.services.events import EventDispatcher
from botmux.services.interaction_engine import InteractionEngine


def truncate(text: str, max_length: int) -> str:
    """Cut ``text`` so it fits in one platform message."""
    if len(text) > max_length - 5:
        return text[: max_length - 5] + "..."
    return text


def format_log_line(message: str, level: int) -> str:
    return f"[{logging.getLevelName(level)}] {message}"


class PlatformAdapter(ABC):
    """Interface that all platform adapters must implement.

    Adapters expose ``events`` (emitting READY once after connecting, then
    COMMAND_RECEIVED / TEXT_RECEIVED) and own an ``engine`` holding their
    active interactions.
    """

    name: ClassVar[str]
    max_text_length: ClassVar[int]

    events: EventDispatcher
    engine: InteractionEngine

    @property
    @abstractmethod
    def is_ready(self) -> bool:
        """Whether the adapter is connected and can send."""

    @abstractmethod
    def channel(self, destination_id):
        """The (lazily created) outbound channel for one destination."""

    @abstractmethod
    async def start(self) -> None:
        """Connect, authenticate and begin receiving events."""

    @abstractmethod
    async def stop(self) -> None:
        """Gracefully stop the adapter."""

    @abstractmethod
    async def push_commands(self) -> None:
        """Publish the command registry on the platform's native surface."""

    @abstractmethod
    async def log(self, message: str, level: int = logging.INFO) -> None:
        """Log locally and to the platform's log channel, if configured."""

    @abstractmethod
    async def create_or_update_status(self, text: str) -> None:
        """Create the persistent status message, or edit it if it exists."""

    @abstractmethod
    async def send_one_time_status(self, text: str, notify: bool = False) -> None:
        """Post a one-off message to the status channel."""

    @abstractmethod
    async def replace_status(self, text: str) -> None:
        """Repost the status message below and turn the old one into ``text``.

        An empty ``text`` deletes the old status message instead.
        """

    @abstractmethod
    async def reply(self, interaction: Interaction, text: str) -> None:
        """Send (or update) the bot's reply in an interaction."""

    @abstractmethod
    async def reply_with_options(self, interaction: Interaction, text: str | None) -> None:
        """Send a reply presenting ``interaction.menu``."""

    @abstractmethod
    async def send_direct(self, account_id: str, text: str) -> None:
        """Send a direct message to one account."""

    @abstractmethod
    async def remove_interaction(self, interaction: Interaction) -> None:
        """Forget an interaction and release its ephemeral affordances."""

    @abstractmethod
    async def show_typing(self, interaction: Interaction) -> None:
        """Show a typing indicator where the platform supports one."""

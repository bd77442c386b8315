"""Turns inbound platform messages into interactions and drives their state.

Each adapter owns one :class:`InteractionEngine`. The engine keeps the
adapter's active interactions keyed by (account id, destination id), decides
whether a new message continues one of them (field answer, menu choice) or
starts a new one, and emits ``COMMAND_RECEIVED`` / ``TEXT_RECEIVED`` on the
adapter's event dispatcher.
"""

import logging
import shlex
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable

from botmux.models.command import Command
from botmux.models.interaction import (
    CommandInteraction,
    Interaction,
    InteractionSource,
    InteractionState,
    TextInteraction,
)
from botmux.models.menu import MenuChoiceError
from botmux.services.command_registry import CommandRegistry
from botmux.services.events import BotEvent

if TYPE_CHECKING:
    from botmux.platforms.base import PlatformAdapter

logger = logging.getLogger(__name__)

FOLLOW_UP_PROMPT = "What is {field}?"
ADMIN_REFUSAL = "Sorry, only specified admins can use that command"
MENU_APOLOGY = "Sorry, I wasn't expecting that."


class UnknownCommandError(LookupError):
    """A command invocation named a command nobody registered."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown command /{name}")
        self.name = name


@dataclass(frozen=True)
class CommandInvocation:
    """A parsed command invocation: ``/name`` plus whatever followed it."""

    name: str
    argument_text: str = ""


def parse_field_assignments(command: Command, text: str) -> dict[str, str]:
    """Parse ``field=value`` tokens (shell quoting allowed).

    Returns an empty dict unless every token assigns a declared field.
    """
    try:
        tokens = shlex.split(text)
    except ValueError:
        tokens = text.split()

    values: dict[str, str] = {}
    for token in tokens:
        name, sep, value = token.partition("=")
        field = command.get_field(name) if sep else None
        if field is None or not value:
            return {}
        values[field.name] = value
    return values


def extract_inline_fields(command: Command, argument_text: str) -> dict[str, str]:
    """Field values given together with the invocation itself."""
    text = (argument_text or "").strip()
    if not text or not command.fields:
        return {}

    assigned = parse_field_assignments(command, text)
    if assigned:
        return assigned

    # 필수 필드가 하나뿐이면 명령 뒤의 텍스트 전체를 그 값으로 쓴다
    required = command.required_fields
    if len(required) == 1:
        return {required[0].name: text}
    return {}


def normalize_handle(handle: str | None) -> str:
    return (handle or "").strip().lstrip("@").lower()


class AdminPolicy:
    """Who may run admin-only commands, and where.

    A user passes when the allow-list is empty or contains their handle. The
    destination passes when it is a direct message or one of the sanctioned
    destinations (the adapter's log and status channels).
    """

    def __init__(
        self,
        allowlist: Iterable[str] = (),
        sanctioned_destinations: Iterable[str] = (),
    ) -> None:
        self.allowlist = {normalize_handle(h) for h in allowlist if normalize_handle(h)}
        self.sanctioned_destinations = {str(d) for d in sanctioned_destinations if d}

    def permits_user(self, handle: str | None) -> bool:
        return not self.allowlist or normalize_handle(handle) in self.allowlist

    def permits_destination(self, source: InteractionSource) -> bool:
        return source.is_direct or source.destination_id in self.sanctioned_destinations

    def permits(self, interaction: CommandInteraction) -> bool:
        if not interaction.command.admin_only:
            return True
        return self.permits_user(interaction.source.username) and self.permits_destination(
            interaction.source
        )


class InteractionFactory:
    """Classifies a source as a command or a text interaction.

    ``strict`` factories belong to platforms with a fixed command surface,
    where an unregistered command can only mean something is out of sync.
    """

    def __init__(self, registry: CommandRegistry, strict: bool = False) -> None:
        self.registry = registry
        self.strict = strict

    def create(
        self,
        source: InteractionSource,
        invocation: CommandInvocation | None = None,
    ) -> Interaction:
        if invocation is not None:
            if self.registry.has(invocation.name):
                command = self.registry.get(invocation.name)
                fields = extract_inline_fields(command, invocation.argument_text)
                return CommandInteraction(source, command, fields)
            if self.strict:
                raise UnknownCommandError(invocation.name)
        return TextInteraction(source)


class InteractionEngine:
    def __init__(
        self,
        adapter: "PlatformAdapter",
        registry: CommandRegistry,
        *,
        strict_commands: bool = False,
        admin_policy: AdminPolicy | None = None,
    ) -> None:
        self.adapter = adapter
        self.factory = InteractionFactory(registry, strict=strict_commands)
        self.admin_policy = admin_policy or AdminPolicy()
        self.active: dict[tuple[str, str], Interaction] = {}

    def find(self, account_id: str, destination_id: str) -> Interaction | None:
        return self.active.get((account_id, destination_id))

    def discard(self, interaction: Interaction) -> None:
        if self.active.get(interaction.key) is interaction:
            del self.active[interaction.key]

    async def handle(
        self,
        source: InteractionSource,
        invocation: CommandInvocation | None = None,
    ) -> Interaction | None:
        """Process one inbound message.

        Returns the interaction the message ended up in, or None when it was
        ignored. Raises :class:`UnknownCommandError` from strict factories.
        """
        existing = self.find(source.account.account_id, source.destination_id)
        if existing is not None and invocation is None:
            if await self._continue(existing, source.text):
                return existing

        interaction = self.factory.create(source, invocation)

        # 새 인터랙션이 정상 생성된 뒤에만 이전 것을 정리한다
        if existing is not None:
            await existing.end()
        self.active[interaction.key] = interaction
        await self.adapter.show_typing(interaction)

        if isinstance(interaction, CommandInteraction):
            if not self.admin_policy.permits(interaction):
                logger.info(
                    "Refused admin command /%s for %s in %s",
                    interaction.command.name,
                    source.username or source.account.account_id,
                    source.destination_id,
                )
                try:
                    await interaction.reply(ADMIN_REFUSAL)
                finally:
                    await interaction.end()
                return interaction
            await self.prepare(interaction)
        else:
            await self.adapter.events.emit(BotEvent.TEXT_RECEIVED, interaction)
        return interaction

    async def prepare(self, interaction: CommandInteraction) -> None:
        """Ask for the next missing required field, or announce the command."""
        missing = interaction.missing_fields
        if missing:
            field = missing[0]
            interaction.waiting_field = field.name
            try:
                await interaction.reply(FOLLOW_UP_PROMPT.format(field=field.name))
            except Exception:
                # 질문을 못 보냈으면 답을 기다릴 수 없다
                logger.exception("Could not ask for %s in %r", field.name, interaction)
                await interaction.end()
                return
            if not interaction.ended:
                interaction.state = InteractionState.AWAITING_FIELD
            return

        interaction.state = InteractionState.READY
        if not interaction.announced:
            interaction.announced = True
            await self.adapter.events.emit(BotEvent.COMMAND_RECEIVED, interaction)

    async def select_menu_option(self, interaction: Interaction, raw: str) -> None:
        """Resolve a user's menu answer; malformed answers end the interaction."""
        if interaction.menu is None:
            return
        try:
            key = interaction.menu.parse_choice(raw)
        except MenuChoiceError:
            logger.info("Unexpected menu answer %r for %r", raw, interaction)
            await interaction.reply(MENU_APOLOGY)
            await interaction.end()
            return

        try:
            await interaction.choose_menu_option(key)
        except Exception:
            logger.exception("Menu callback failed for %r", interaction)
            if interaction.ended:
                return
            try:
                await interaction.reply(MENU_APOLOGY)
            except Exception:
                logger.exception("Could not apologise in %r", interaction)
            await interaction.end()

    async def handle_menu_selection(
        self, account_id: str, destination_id: str, raw: str
    ) -> bool:
        """Resolve a menu choice that arrived out of band (e.g. a button)."""
        interaction = self.find(account_id, destination_id)
        if interaction is None or interaction.menu is None or interaction.processing:
            return False
        await self.select_menu_option(interaction, raw)
        return True

    async def expire_idle(self, max_idle_seconds: float, now: float | None = None) -> int:
        now = time.monotonic() if now is None else now
        stale = [
            interaction
            for interaction in self.active.values()
            if now - interaction.last_activity > max_idle_seconds
        ]
        for interaction in stale:
            logger.info("Ending idle interaction %r", interaction)
            await interaction.end()
        return len(stale)

    async def _continue(self, existing: Interaction, text: str) -> bool:
        """Feed ``text`` to an active interaction; False if it doesn't belong there."""
        if isinstance(existing, CommandInteraction) and existing.processing:
            # 응답이 아직 처리 중이면 경합을 피하기 위해 무시한다
            logger.debug("Ignoring message while %r is processing", existing)
            return True

        if existing.menu is not None and not existing.processing:
            await self.select_menu_option(existing, text)
            return True

        if isinstance(existing, CommandInteraction) and existing.waiting_field:
            if existing.record_answer(text):
                await self.prepare(existing)
            return True

        return False

"""Canonical store of the commands the host application exposes."""

import logging
from collections.abc import Iterator

from botmux.models.command import Command

logger = logging.getLogger(__name__)


class CommandNotFoundError(KeyError):
    pass


class CommandRegistry:
    """Case-insensitive name → Command mapping.

    Filled once at startup, before any adapter accepts events.
    """

    def __init__(self) -> None:
        self._commands: dict[str, Command] = {}

    def register(self, command: Command) -> bool:
        command.name = command.name.lower()

        if command.name in self._commands:
            logger.warning("Attempted to add %s more than once, ignored", command.name)
            return False

        self._commands[command.name] = command
        logger.debug("Command registered: %s", command.name)
        return True

    def get(self, name: str) -> Command:
        try:
            return self._commands[name.lower()]
        except KeyError:
            raise CommandNotFoundError(name) from None

    def has(self, name: str) -> bool:
        return name.lower() in self._commands

    @property
    def commands(self) -> list[Command]:
        return list(self._commands.values())

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.has(name)

    def __iter__(self) -> Iterator[Command]:
        return iter(self.commands)

    def __len__(self) -> int:
        return len(self._commands)

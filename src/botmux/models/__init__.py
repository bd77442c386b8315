from botmux.models.database import Base, init_db, get_session
from botmux.models.user import PlatformAccountLink, UnifiedUser
from botmux.models.command import Command, CommandField
from botmux.models.menu import MenuChoiceError, ReplyMenu
from botmux.models.interaction import (
    CommandInteraction,
    Interaction,
    InteractionSource,
    InteractionState,
    PlatformAccount,
    TextInteraction,
)

__all__ = [
    "Base",
    "init_db",
    "get_session",
    "PlatformAccountLink",
    "UnifiedUser",
    "Command",
    "CommandField",
    "MenuChoiceError",
    "ReplyMenu",
    "CommandInteraction",
    "Interaction",
    "InteractionSource",
    "InteractionState",
    "PlatformAccount",
    "TextInteraction",
]

"""Telegram adapter using python-telegram-bot (polling mode).

Telegram delivers every kind of update through one stream, so commands,
follow-up answers, menu answers and service messages are all sorted out in
:meth:`TelegramAdapter.process_message`.
"""

import asyncio
import logging
import re
from functools import partial

from telegram import (
    Bot,
    BotCommand,
    BotCommandScopeAllPrivateChats,
    BotCommandScopeChatAdministrators,
    KeyboardButton,
    Message,
    ReplyKeyboardMarkup,
    ReplyParameters,
    Update,
)
from telegram.constants import ChatAction, ChatType
from telegram.error import BadRequest
from telegram.ext import Application, ContextTypes, TypeHandler

from config.settings import settings
from botmux.models.interaction import (
    CommandInteraction,
    Interaction,
    InteractionSource,
    PlatformAccount,
)
from botmux.platforms.base import PlatformAdapter, format_log_line, truncate
from botmux.platforms.dispatcher import ChannelDispatcher, RateLimit
from botmux.services.command_registry import CommandRegistry
from botmux.services.events import BotEvent, EventDispatcher
from botmux.services.interaction_engine import (
    AdminPolicy,
    CommandInvocation,
    InteractionEngine,
)

logger = logging.getLogger(__name__)

# 텔레그램 메시지 최대 길이
TELEGRAM_MAX_LENGTH = 4096

COMMAND_PATTERN = re.compile(r"^/([^@\s]+)(?:@(\S+))?(?:\s+(.*))?$", re.DOTALL)


def parse_command(text: str) -> tuple[CommandInvocation | None, str | None]:
    """Split ``/name@bot args`` into an invocation and the addressed bot.

    Returns ``(None, None)`` when the text is not command syntax.
    """
    match = COMMAND_PATTERN.match((text or "").strip())
    if not match:
        return None, None
    invocation = CommandInvocation(match.group(1).lower(), (match.group(3) or "").strip())
    return invocation, match.group(2)


def mentions_bot(text: str, bot_username: str) -> bool:
    if not bot_username:
        return False
    pattern = rf"@{re.escape(bot_username)}(?=\s|$)"
    return re.search(pattern, text, re.IGNORECASE) is not None


def strip_mention(text: str, bot_username: str) -> str:
    if not bot_username:
        return text
    pattern = rf"@{re.escape(bot_username)}(?=\s|$)"
    return re.sub(pattern, "", text, flags=re.IGNORECASE).strip()


def build_keyboard(labels: list[str]) -> ReplyKeyboardMarkup:
    # selective: only the user being replied to sees the buttons
    return ReplyKeyboardMarkup(
        [[KeyboardButton(label) for label in labels]],
        resize_keyboard=True,
        one_time_keyboard=True,
        selective=True,
    )


def _is_message(result: object) -> bool:
    # edit_message_text returns True instead of a Message for inline messages
    return result is not None and result is not True


class TelegramChannel:
    """One Telegram chat and the paced queue of calls made to it."""

    def __init__(self, bot: Bot, chat_id: int, rate_limit: RateLimit) -> None:
        self.bot = bot
        self.chat_id = chat_id
        self.dispatcher = ChannelDispatcher(str(chat_id), rate_limit)

    @property
    def stopping(self) -> bool:
        return self.dispatcher.stopping

    def stop(self) -> None:
        self.dispatcher.stop()

    def submit(self, call) -> asyncio.Future:
        return self.dispatcher.submit(call)

    # ── Queued operations ─────────────────────────────────

    def typing(self) -> asyncio.Future:
        return self.submit(partial(self.bot.send_chat_action, self.chat_id, ChatAction.TYPING))

    def send(
        self,
        text: str,
        reply_to: int | None = None,
        markup: ReplyKeyboardMarkup | None = None,
        disable_notification: bool = False,
    ) -> asyncio.Future:
        return self.submit(
            partial(self.send_message, text, reply_to, markup, disable_notification)
        )

    def edit(self, message_id: int, text: str) -> asyncio.Future:
        return self.submit(partial(self.edit_message, message_id, text))

    def delete(self, message_id: int) -> asyncio.Future:
        return self.submit(partial(self.delete_message, message_id))

    def pin(self, message_id: int, disable_notification: bool = False) -> asyncio.Future:
        return self.submit(
            partial(
                self.bot.pin_chat_message,
                self.chat_id,
                message_id,
                disable_notification=disable_notification,
            )
        )

    def unpin(self, message_id: int) -> asyncio.Future:
        return self.submit(
            partial(self.bot.unpin_chat_message, self.chat_id, message_id=message_id)
        )

    # ── Direct calls (run inside queued tasks) ────────────

    async def send_message(
        self,
        text: str,
        reply_to: int | None = None,
        markup: ReplyKeyboardMarkup | None = None,
        disable_notification: bool = False,
    ) -> Message:
        try:
            return await self.bot.send_message(
                self.chat_id,
                text,
                reply_parameters=ReplyParameters(reply_to) if reply_to else None,
                reply_markup=markup,
                disable_notification=disable_notification,
            )
        except BadRequest:
            if reply_to is None:
                raise
            # 사용자가 원본 메시지를 지웠거나 재시작 직후라면 답장 없이 다시 보낸다
            logger.info("Reply target %s gone in chat %s, sending plain", reply_to, self.chat_id)
            return await self.send_message(text, None, markup, disable_notification)

    async def edit_message(self, message_id: int, text: str) -> Message | bool | None:
        try:
            return await self.bot.edit_message_text(
                text, chat_id=self.chat_id, message_id=message_id
            )
        except BadRequest as exc:
            if "not modified" in str(exc).lower():
                return None
            logger.info("Could not edit message %s in chat %s, sending new", message_id, self.chat_id)
            return await self.send_message(text)

    async def delete_message(self, message_id: int) -> bool:
        try:
            return await self.bot.delete_message(self.chat_id, message_id)
        except BadRequest as exc:
            logger.warning("Could not delete message %s in chat %s: %s", message_id, self.chat_id, exc)
            return False


class TelegramAdapter(PlatformAdapter):
    name = "telegram"
    max_text_length = TELEGRAM_MAX_LENGTH

    def __init__(
        self,
        registry: CommandRegistry,
        *,
        token: str | None = None,
        log_channel_id: int | None = None,
        status_channel_id: int | None = None,
        admin_allowlist: list[str] | None = None,
        rate_limit: RateLimit | None = None,
        bot: Bot | None = None,
    ) -> None:
        self.registry = registry
        self.token = settings.telegram_bot_token if token is None else token
        self.log_channel_id = (
            settings.telegram_log_channel if log_channel_id is None else log_channel_id
        )
        self.status_channel_id = (
            settings.telegram_status_channel if status_channel_id is None else status_channel_id
        )
        self.rate_limit = rate_limit or RateLimit(
            settings.telegram_rate_limit_calls, settings.telegram_rate_limit_window
        )
        self.events = EventDispatcher()
        self.engine = InteractionEngine(
            self,
            registry,
            strict_commands=False,
            admin_policy=AdminPolicy(
                settings.telegram_admin_allowlist if admin_allowlist is None else admin_allowlist,
                self._sanctioned_destinations(),
            ),
        )
        self.bot_username = ""

        self._app: Application | None = None
        self._bot = bot
        self._ready = False
        self._channels: dict[int, TelegramChannel] = {}
        self._status_message_id: int | None = None
        self._status_text: str | None = None
        self._status_requested = False

    @property
    def is_ready(self) -> bool:
        return self._ready and self._bot is not None

    @property
    def log_channel(self) -> TelegramChannel | None:
        return self.channel(self.log_channel_id) if self.log_channel_id else None

    @property
    def status_channel(self) -> TelegramChannel | None:
        return self.channel(self.status_channel_id) if self.status_channel_id else None

    def channel(self, chat_id: int) -> TelegramChannel:
        chat_id = int(chat_id)
        if chat_id not in self._channels:
            self._channels[chat_id] = TelegramChannel(self._bot, chat_id, self.rate_limit)
        return self._channels[chat_id]

    # ── Lifecycle ──────────────────────────────────────────

    async def start(self) -> None:
        if not self.token:
            logger.warning("No Telegram bot token configured, Telegram disabled")
            return

        self._app = Application.builder().token(self.token).build()
        self._bot = self._app.bot
        self._app.add_handler(TypeHandler(Update, self._on_update))
        self._app.add_error_handler(self._on_error)

        logger.info("Telegram bot starting (polling)...")
        await self._app.initialize()
        me = await self._bot.get_me()
        self.bot_username = me.username or ""

        await self._app.start()
        # 시작 전에 쌓인 업데이트는 무시한다
        await self._app.updater.start_polling(drop_pending_updates=True)

        self._ready = True
        logger.info("Telegram bot ready as @%s", self.bot_username)
        await self.events.emit(BotEvent.READY, self)

    async def stop(self) -> None:
        self._ready = False
        if self._app:
            await self._app.updater.stop()
            await self._app.stop()
            await self._app.shutdown()

    # ── Inbound ────────────────────────────────────────────

    async def _on_update(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        await self.process_message(update.message)

    async def _on_error(self, update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
        logger.error("Error while handling Telegram update", exc_info=context.error)

    async def process_message(self, message: Message | None) -> Interaction | None:
        # 메시지가 없는 업데이트는 아직 쓸 일이 없다
        if message is None:
            return None

        chat = message.chat
        if message.migrate_to_chat_id:
            await self._migrate(chat.id, message.migrate_to_chat_id)
            return None

        channel = self.channel(chat.id)

        # keep groups clear of join/leave/pin notices
        if message.new_chat_members or message.left_chat_member or message.pinned_message:
            channel.delete(message.message_id)
            return None

        if message.from_user is None or not message.text:
            return None

        text = message.text
        direct = chat.type in (ChatType.PRIVATE, ChatType.SENDER)
        if not direct:
            if mentions_bot(text, self.bot_username):
                text = strip_mention(text, self.bot_username)
            elif not self._expects_answer(message):
                return None

        invocation, target = parse_command(text)
        if target and target.lower() != self.bot_username.lower():
            return None  # addressed to another bot

        tg_user = message.from_user
        account = PlatformAccount(
            platform=self.name,
            account_id=str(tg_user.id),
            name=tg_user.full_name,
            handle=f"@{tg_user.username}" if tg_user.username else "",
            adapter=self,
        )
        source = InteractionSource(
            account=account,
            destination_id=str(chat.id),
            text=text,
            message_id=str(message.message_id),
            raw=message,
            is_direct=direct,
        )
        return await self.engine.handle(source, invocation)

    def _expects_answer(self, message: Message) -> bool:
        """Whether an unmentioned group message still belongs to the bot.

        Keyboard buttons and follow-up answers carry no mention, so a pending
        menu or question from the same user counts, as does replying to us.
        """
        pending = self.engine.find(str(message.from_user.id), str(message.chat.id))
        if pending is not None and not pending.processing:
            if pending.menu is not None:
                return True
            if isinstance(pending, CommandInteraction) and pending.waiting_field:
                return True

        replied = message.reply_to_message
        author = replied.from_user if replied is not None else None
        return bool(
            author is not None
            and author.is_bot
            and (author.username or "").lower() == self.bot_username.lower()
        )

    async def _migrate(self, old_id: int, new_id: int) -> None:
        """A group became a supergroup and got a new id."""
        new_channel = self.channel(new_id)
        old_channel = self._channels.pop(old_id, None)
        if old_channel is not None:
            old_channel.stop()

        moved: list[str] = []
        if self.status_channel_id == old_id:
            self.status_channel_id = new_channel.chat_id
            self._status_message_id = None
            self._status_text = None
            self._status_requested = False
            moved.append("STATUS CHANNEL")
        if self.log_channel_id == old_id:
            self.log_channel_id = new_channel.chat_id
            moved.append("LOG CHANNEL")
        self.engine.admin_policy.sanctioned_destinations = self._sanctioned_destinations()

        label = " and ".join(moved) or f"CHAT {old_id}"
        await self.log(
            f"ALERT: UPDATE SETTINGS FILE!! {label} HAS CHANGED TO A SUPERGROUP AND ITS ID "
            f"HAS CHANGED TO {new_id}\n\nBot has probably lost privileges there.",
            logging.ERROR,
        )

    def _sanctioned_destinations(self) -> set[str]:
        return {str(c) for c in (self.log_channel_id, self.status_channel_id) if c}

    # ── Commands ───────────────────────────────────────────

    async def push_commands(self) -> None:
        user_commands: list[BotCommand] = []
        admin_commands: list[BotCommand] = []
        for command in self.registry:
            bot_command = BotCommand(command.name, command.description or command.name)
            if command.admin_only:
                admin_commands.append(bot_command)
            else:
                user_commands.append(bot_command)

        # admin commands show up for chat admins in the status/log chats
        if admin_commands:
            for chat_id in {self.status_channel_id, self.log_channel_id} - {0, None}:
                await self._bot.set_my_commands(
                    admin_commands, scope=BotCommandScopeChatAdministrators(chat_id)
                )

        # everything else for everyone in DMs
        await self._bot.set_my_commands(user_commands, scope=BotCommandScopeAllPrivateChats())
        logger.info(
            "Pushed %d user and %d admin commands to Telegram",
            len(user_commands),
            len(admin_commands),
        )

    # ── Logging & status ───────────────────────────────────

    async def log(self, message: str, level: int = logging.INFO) -> None:
        logger.log(level, message)
        if level < logging.INFO or not self.is_ready or self.log_channel is None:
            return
        self.log_channel.send(truncate(format_log_line(message, level), self.max_text_length))

    async def create_or_update_status(self, text: str) -> None:
        channel = self.status_channel
        text = truncate(text, self.max_text_length)
        # 같은 내용으로 수정하면 텔레그램이 에러를 낸다
        if not self.is_ready or channel is None or text == self._status_text:
            return
        self._status_text = text

        if self._status_message_id is None and not self._status_requested:
            self._status_requested = True
            channel.submit(partial(self._post_status, channel, text))
        else:
            # runs after any pending creation, so it sees the new message id
            channel.submit(partial(self._edit_status, channel, text))

    async def _post_status(self, channel: TelegramChannel, text: str) -> None:
        try:
            message = await channel.send_message(text)
        except Exception:
            self._status_requested = False
            raise
        self._status_message_id = message.message_id

    async def _edit_status(self, channel: TelegramChannel, text: str) -> None:
        if self._status_message_id is None:
            return
        message = await channel.edit_message(self._status_message_id, text)
        if _is_message(message) and message.message_id != self._status_message_id:
            # the old status message was gone and a new one was sent
            self._status_message_id = message.message_id

    async def send_one_time_status(self, text: str, notify: bool = False) -> None:
        channel = self.status_channel
        if not self.is_ready or channel is None:
            return
        channel.submit(
            partial(self._post_one_time_status, channel, truncate(text, self.max_text_length), notify)
        )

    async def _post_one_time_status(self, channel: TelegramChannel, text: str, notify: bool) -> None:
        message = await channel.send_message(text, disable_notification=not notify)
        if notify:
            # pinning is the reliable way to force a notification in telegram
            channel.pin(message.message_id, disable_notification=False)
            channel.unpin(message.message_id)

    async def replace_status(self, text: str) -> None:
        channel = self.status_channel
        if not self.is_ready or channel is None:
            return
        if self._status_message_id is None or not self._status_text:
            return

        old_id = self._status_message_id
        channel.submit(partial(self._repost_status, channel, self._status_text))
        if text:
            channel.edit(old_id, truncate(text, self.max_text_length))
        else:
            channel.delete(old_id)

    async def _repost_status(self, channel: TelegramChannel, text: str) -> None:
        message = await channel.send_message(text, disable_notification=True)
        self._status_message_id = message.message_id

    # ── Interactions ───────────────────────────────────────

    async def reply(self, interaction: Interaction, text: str) -> None:
        if not self.is_ready:
            return
        source = interaction.source
        channel = self.channel(int(source.destination_id))
        text = truncate(text, self.max_text_length)

        # a menu reply gets replaced so its keyboard goes away
        if interaction.bot_message is not None and interaction.bot_message_has_menu:
            channel.delete(interaction.bot_message.message_id)
            interaction.bot_message = None
            interaction.bot_message_has_menu = False

        if interaction.bot_message is not None:
            message = await channel.edit(interaction.bot_message.message_id, text)
        else:
            message = await channel.send(text, reply_to=_message_id(source))

        if _is_message(message):
            interaction.bot_message = message

    async def reply_with_options(self, interaction: Interaction, text: str | None) -> None:
        if not self.is_ready:
            return
        source = interaction.source
        channel = self.channel(int(source.destination_id))
        menu = interaction.menu
        text = text or ""

        keyboard = None
        if menu is not None and menu.options:
            keyboard = build_keyboard(menu.labels)
            text = f"{text}\n{menu.text}".strip()
        text = truncate(text, self.max_text_length)

        previous = interaction.bot_message
        if previous is not None and keyboard is None:
            message = await channel.edit(previous.message_id, text)
        else:
            # a keyboard can't be edited into an existing message
            sent = channel.send(text, reply_to=_message_id(source), markup=keyboard)
            if previous is not None:
                channel.delete(previous.message_id)
            message = await sent

        if _is_message(message):
            interaction.bot_message = message
        interaction.bot_message_has_menu = keyboard is not None

    async def remove_interaction(self, interaction: Interaction) -> None:
        self.engine.discard(interaction)

        # menus left behind keep popping up for the user
        if interaction.bot_message is not None and interaction.bot_message_has_menu:
            self.channel(int(interaction.source.destination_id)).delete(
                interaction.bot_message.message_id
            )
            interaction.bot_message_has_menu = False

    async def show_typing(self, interaction: Interaction) -> None:
        if self.is_ready:
            self.channel(int(interaction.source.destination_id)).typing()

    async def send_direct(self, account_id: str, text: str) -> None:
        if not self.is_ready:
            return
        # private chat ids are the user ids
        self.channel(int(account_id)).send(truncate(text, self.max_text_length))


def _message_id(source: InteractionSource) -> int | None:
    return int(source.message_id) if source.message_id else None

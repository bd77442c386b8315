"""Slack adapter using slack-bolt async (Socket Mode).

Slack's command surface is fixed by the app manifest, so the interaction
engine runs in strict mode here: a slash command we don't know means the
manifest is out of date, and the invoking user is told so.
"""

import asyncio
import logging
import re
import time
from functools import partial
from typing import Any

from slack_bolt.adapter.socket_mode.async_handler import AsyncSocketModeHandler
from slack_bolt.async_app import AsyncApp
from slack_sdk.errors import SlackApiError
from slack_sdk.web.async_client import AsyncWebClient

from config.settings import settings
from botmux.models.interaction import Interaction, InteractionSource, PlatformAccount
from botmux.models.menu import ReplyMenu
from botmux.platforms.base import PlatformAdapter, format_log_line, truncate
from botmux.platforms.dispatcher import ChannelDispatcher, RateLimit
from botmux.services.command_registry import CommandRegistry
from botmux.services.events import BotEvent, EventDispatcher
from botmux.services.interaction_engine import (
    AdminPolicy,
    CommandInvocation,
    InteractionEngine,
    UnknownCommandError,
)

logger = logging.getLogger(__name__)

SLACK_MAX_LENGTH = 4000
MENU_ACTION_PREFIX = "botmux_menu_"
BUTTON_TEXT_MAX_LENGTH = 75
MENTION_PATTERN = re.compile(r"<@[A-Z0-9]+>")


def strip_mentions(text: str) -> str:
    return MENTION_PATTERN.sub("", text or "").strip()


def parse_slash_command(payload: dict) -> CommandInvocation:
    """Build an invocation from a slash-command payload (``/name`` + ``text``)."""
    name = payload.get("command", "").lstrip("/").lower()
    return CommandInvocation(name, (payload.get("text") or "").strip())


def menu_blocks(menu: ReplyMenu, text: str | None) -> list[dict]:
    """Block Kit layout for a menu: optional text section plus one button per option."""
    blocks: list[dict] = []
    if text:
        blocks.append({"type": "section", "text": {"type": "mrkdwn", "text": text}})
    buttons = []
    for i, (label, option) in enumerate(zip(menu.labels, menu.options.values()), start=1):
        caption = f"{label}: {option}" if menu.numbered else option
        buttons.append(
            {
                "type": "button",
                "text": {
                    "type": "plain_text",
                    "text": truncate(caption, BUTTON_TEXT_MAX_LENGTH),
                },
                "action_id": f"{MENU_ACTION_PREFIX}{i}",
                "value": label,
            }
        )
    blocks.append({"type": "actions", "elements": buttons})
    return blocks


def slash_command_manifest(registry: CommandRegistry) -> list[dict]:
    entries = []
    for command in registry:
        entry = {
            "command": f"/{command.name}",
            "description": command.description or command.name,
            "should_escape": False,
        }
        if command.fields:
            entry["usage_hint"] = " ".join(f"{f.name}=..." for f in command.fields)
        entries.append(entry)
    return entries


def _sent(response: Any, text: str) -> dict:
    return {"ts": response["ts"], "text": text}


class SlackChannel:
    """One Slack conversation and the paced queue of calls made to it."""

    def __init__(self, client: AsyncWebClient, channel_id: str, rate_limit: RateLimit) -> None:
        self.client = client
        self.channel_id = channel_id
        self.dispatcher = ChannelDispatcher(channel_id, rate_limit)

    @property
    def stopping(self) -> bool:
        return self.dispatcher.stopping

    def stop(self) -> None:
        self.dispatcher.stop()

    def submit(self, call) -> asyncio.Future:
        return self.dispatcher.submit(call)

    def send(
        self, text: str, thread_ts: str | None = None, blocks: list[dict] | None = None
    ) -> asyncio.Future:
        return self.submit(partial(self.send_message, text, thread_ts, blocks))

    def edit(self, ts: str, text: str, blocks: list[dict] | None = None) -> asyncio.Future:
        return self.submit(partial(self.edit_message, ts, text, blocks))

    def delete(self, ts: str) -> asyncio.Future:
        return self.submit(partial(self.delete_message, ts))

    async def send_message(
        self, text: str, thread_ts: str | None = None, blocks: list[dict] | None = None
    ) -> dict:
        try:
            response = await self.client.chat_postMessage(
                channel=self.channel_id, text=text, thread_ts=thread_ts, blocks=blocks
            )
        except SlackApiError as exc:
            if thread_ts is None:
                raise
            logger.info(
                "Thread %s unavailable in %s (%s), posting top-level",
                thread_ts,
                self.channel_id,
                exc.response.get("error"),
            )
            return await self.send_message(text, None, blocks)
        return _sent(response, text)

    async def edit_message(
        self, ts: str, text: str, blocks: list[dict] | None = None
    ) -> dict:
        try:
            # blocks=[] clears buttons left over from a menu
            response = await self.client.chat_update(
                channel=self.channel_id, ts=ts, text=text, blocks=blocks or []
            )
        except SlackApiError as exc:
            logger.info(
                "Could not edit %s in %s (%s), sending new",
                ts,
                self.channel_id,
                exc.response.get("error"),
            )
            return await self.send_message(text, blocks=blocks)
        return _sent(response, text)

    async def delete_message(self, ts: str) -> bool:
        try:
            await self.client.chat_delete(channel=self.channel_id, ts=ts)
        except SlackApiError as exc:
            logger.warning(
                "Could not delete %s in %s: %s", ts, self.channel_id, exc.response.get("error")
            )
            return False
        return True


class SlackAdapter(PlatformAdapter):
    name = "slack"
    max_text_length = SLACK_MAX_LENGTH

    def __init__(
        self,
        registry: CommandRegistry,
        *,
        bot_token: str | None = None,
        app_token: str | None = None,
        app_id: str | None = None,
        config_token: str | None = None,
        log_channel_id: str | None = None,
        status_channel_id: str | None = None,
        admin_allowlist: list[str] | None = None,
        rate_limit: RateLimit | None = None,
        client: AsyncWebClient | None = None,
    ) -> None:
        self.registry = registry
        self.bot_token = settings.slack_bot_token if bot_token is None else bot_token
        self.app_token = settings.slack_app_token if app_token is None else app_token
        self.app_id = settings.slack_app_id if app_id is None else app_id
        self.config_token = settings.slack_config_token if config_token is None else config_token
        self.log_channel_id = (
            settings.slack_log_channel if log_channel_id is None else log_channel_id
        )
        self.status_channel_id = (
            settings.slack_status_channel if status_channel_id is None else status_channel_id
        )
        self.rate_limit = rate_limit or RateLimit(
            settings.slack_rate_limit_calls, settings.slack_rate_limit_window
        )
        self.profile_cache_seconds = settings.slack_profile_cache_seconds
        self.events = EventDispatcher()
        self.engine = InteractionEngine(
            self,
            registry,
            strict_commands=True,
            admin_policy=AdminPolicy(
                settings.slack_admin_allowlist if admin_allowlist is None else admin_allowlist,
                [self.log_channel_id, self.status_channel_id],
            ),
        )
        self.bot_user_id = ""

        self._app: AsyncApp | None = None
        self._handler: AsyncSocketModeHandler | None = None
        self._client = client
        self._ready = False
        self._channels: dict[str, SlackChannel] = {}
        self._profiles: dict[str, tuple[float, str, str]] = {}
        self._dm_channels: dict[str, str] = {}
        self._status_ts: str | None = None
        self._status_text: str | None = None
        self._status_requested = False

    @property
    def is_ready(self) -> bool:
        return self._ready and self._client is not None

    @property
    def log_channel(self) -> SlackChannel | None:
        return self.channel(self.log_channel_id) if self.log_channel_id else None

    @property
    def status_channel(self) -> SlackChannel | None:
        return self.channel(self.status_channel_id) if self.status_channel_id else None

    def channel(self, channel_id: str) -> SlackChannel:
        if channel_id not in self._channels:
            self._channels[channel_id] = SlackChannel(self._client, channel_id, self.rate_limit)
        return self._channels[channel_id]

    # ── Lifecycle ──────────────────────────────────────────

    async def start(self) -> None:
        if not self.bot_token or not self.app_token:
            logger.warning("Slack tokens not configured, Slack disabled")
            return

        self._app = AsyncApp(token=self.bot_token)
        self._client = self._app.client
        self._register_handlers()

        auth = await self._client.auth_test()
        self.bot_user_id = auth["user_id"]

        self._handler = AsyncSocketModeHandler(self._app, self.app_token)
        logger.info("Slack bot starting (Socket Mode)...")
        await self._handler.connect_async()

        self._ready = True
        logger.info("Slack bot ready as %s", self.bot_user_id)
        await self.events.emit(BotEvent.READY, self)

    async def stop(self) -> None:
        self._ready = False
        if self._handler:
            await self._handler.close_async()

    def _register_handlers(self) -> None:
        if not self._app:
            return

        @self._app.command(re.compile(r"^/.+"))
        async def handle_command(ack, command, respond):
            # Slack wants an ack within 3 seconds
            await ack()
            await self.process_slash_command(command, respond)

        @self._app.event("app_mention")
        async def handle_mention(event):
            await self.process_message(event)

        @self._app.event("message")
        async def handle_dm(event):
            # Only respond to DMs (channel type "im")
            if event.get("channel_type") == "im":
                await self.process_message(event)

        @self._app.action(re.compile(f"^{MENU_ACTION_PREFIX}"))
        async def handle_menu_button(ack, body, action):
            await ack()
            await self.process_menu_action(body, action)

        @self._app.error
        async def handle_error(error, body):
            logger.error("Error while handling Slack event", exc_info=error)

    # ── Inbound ────────────────────────────────────────────

    async def process_slash_command(self, payload: dict, respond) -> Interaction | None:
        invocation = parse_slash_command(payload)
        account = await self._account(payload.get("user_id", ""), payload.get("user_name", ""))
        channel_id = payload.get("channel_id", "")
        source = InteractionSource(
            account=account,
            destination_id=channel_id,
            text=payload.get("text") or "",
            raw=payload,
            is_direct=channel_id.startswith("D") or payload.get("channel_name") == "directmessage",
        )
        try:
            return await self.engine.handle(source, invocation)
        except UnknownCommandError as exc:
            logger.warning("Slack sent unknown command /%s, manifest out of date?", exc.name)
            await respond(f"Sorry, /{exc.name} isn't a command I know.")
            return None

    async def process_message(self, event: dict) -> Interaction | None:
        # 봇 메시지와 수정/삭제 알림은 무시
        if event.get("bot_id") or event.get("subtype"):
            return None

        user_id = event.get("user", "")
        text = strip_mentions(event.get("text", ""))
        if not user_id or not text or user_id == self.bot_user_id:
            return None

        source = InteractionSource(
            account=await self._account(user_id),
            destination_id=event.get("channel", ""),
            text=text,
            message_id=event.get("ts"),
            raw=event,
            is_direct=event.get("channel_type") == "im",
            thread_id=event.get("thread_ts"),
        )
        return await self.engine.handle(source)

    async def process_menu_action(self, body: dict, action: dict) -> bool:
        user_id = body.get("user", {}).get("id", "")
        channel_id = body.get("channel", {}).get("id", "")
        return await self.engine.handle_menu_selection(user_id, channel_id, action.get("value", ""))

    async def _account(self, user_id: str, fallback_name: str = "") -> PlatformAccount:
        name, handle = await self._profile(user_id, fallback_name)
        return PlatformAccount(
            platform=self.name, account_id=user_id, name=name, handle=handle, adapter=self
        )

    async def _profile(self, user_id: str, fallback_name: str = "") -> tuple[str, str]:
        cached = self._profiles.get(user_id)
        now = time.monotonic()
        if cached and cached[0] > now:
            return cached[1], cached[2]

        try:
            response = await self._client.users_info(user=user_id)
        except SlackApiError as exc:
            logger.warning("users.info failed for %s: %s", user_id, exc.response.get("error"))
            name = fallback_name or user_id
            return name, f"@{fallback_name}" if fallback_name else ""

        user = response["user"]
        profile = user.get("profile", {})
        name = profile.get("real_name") or user.get("real_name") or user.get("name") or user_id
        handle = f"@{user['name']}" if user.get("name") else ""
        self._profiles[user_id] = (now + self.profile_cache_seconds, name, handle)
        return name, handle

    # ── Commands ───────────────────────────────────────────

    async def push_commands(self) -> None:
        if not self.app_id or not self.config_token:
            names = ", ".join(f"/{c.name}" for c in self.registry)
            logger.warning(
                "Slack slash commands come from the app manifest; update it by hand: %s", names
            )
            return

        exported = await self._client.apps_manifest_export(
            token=self.config_token, app_id=self.app_id
        )
        manifest = exported["manifest"]
        manifest.setdefault("features", {})["slash_commands"] = slash_command_manifest(
            self.registry
        )
        await self._client.apps_manifest_update(
            token=self.config_token, app_id=self.app_id, manifest=manifest
        )
        logger.info("Pushed %d slash commands to the Slack manifest", len(self.registry))

    # ── Logging & status ───────────────────────────────────

    async def log(self, message: str, level: int = logging.INFO) -> None:
        logger.log(level, message)
        if level < logging.INFO or not self.is_ready or self.log_channel is None:
            return
        self.log_channel.send(truncate(format_log_line(message, level), self.max_text_length))

    async def create_or_update_status(self, text: str) -> None:
        channel = self.status_channel
        text = truncate(text, self.max_text_length)
        if not self.is_ready or channel is None or text == self._status_text:
            return
        self._status_text = text

        if self._status_ts is None and not self._status_requested:
            self._status_requested = True
            channel.submit(partial(self._post_status, channel, text))
        else:
            channel.submit(partial(self._edit_status, channel, text))

    async def _post_status(self, channel: SlackChannel, text: str) -> None:
        try:
            message = await channel.send_message(text)
        except Exception:
            self._status_requested = False
            raise
        self._status_ts = message["ts"]

    async def _edit_status(self, channel: SlackChannel, text: str) -> None:
        if self._status_ts is None:
            return
        message = await channel.edit_message(self._status_ts, text)
        self._status_ts = message["ts"]

    async def send_one_time_status(self, text: str, notify: bool = False) -> None:
        channel = self.status_channel
        if not self.is_ready or channel is None:
            return
        if notify:
            text = f"<!here> {text}"
        channel.send(truncate(text, self.max_text_length))

    async def replace_status(self, text: str) -> None:
        channel = self.status_channel
        if not self.is_ready or channel is None:
            return
        if self._status_ts is None or not self._status_text:
            return

        old_ts = self._status_ts
        channel.submit(partial(self._repost_status, channel, self._status_text))
        if text:
            channel.edit(old_ts, truncate(text, self.max_text_length))
        else:
            channel.delete(old_ts)

    async def _repost_status(self, channel: SlackChannel, text: str) -> None:
        message = await channel.send_message(text)
        self._status_ts = message["ts"]

    # ── Interactions ───────────────────────────────────────

    async def reply(self, interaction: Interaction, text: str) -> None:
        if not self.is_ready:
            return
        source = interaction.source
        channel = self.channel(source.destination_id)
        text = truncate(text, self.max_text_length)

        if interaction.bot_message is not None:
            message = await channel.edit(interaction.bot_message["ts"], text)
        else:
            message = await channel.send(text, thread_ts=source.thread_id)
        interaction.bot_message = message
        interaction.bot_message_has_menu = False

    async def reply_with_options(self, interaction: Interaction, text: str | None) -> None:
        if not self.is_ready:
            return
        source = interaction.source
        channel = self.channel(source.destination_id)
        menu = interaction.menu
        text = text or ""

        blocks = None
        if menu is not None and menu.options:
            blocks = menu_blocks(menu, text)
            # plain text is what notifications and old clients show
            text = f"{text}\n{menu.text}".strip()
        text = truncate(text, self.max_text_length)

        if interaction.bot_message is not None:
            message = await channel.edit(interaction.bot_message["ts"], text, blocks)
        else:
            message = await channel.send(text, thread_ts=source.thread_id, blocks=blocks)
        interaction.bot_message = message
        interaction.bot_message_has_menu = blocks is not None

    async def remove_interaction(self, interaction: Interaction) -> None:
        self.engine.discard(interaction)

        if interaction.bot_message is not None and interaction.bot_message_has_menu:
            message = interaction.bot_message
            self.channel(interaction.source.destination_id).edit(message["ts"], message["text"])
            interaction.bot_message_has_menu = False

    async def show_typing(self, interaction: Interaction) -> None:
        # bots have no typing indicator on Slack
        return None

    async def send_direct(self, account_id: str, text: str) -> None:
        if not self.is_ready:
            return
        channel_id = await self._open_dm(account_id)
        self.channel(channel_id).send(truncate(text, self.max_text_length))

    async def _open_dm(self, account_id: str) -> str:
        if account_id not in self._dm_channels:
            response = await self._client.conversations_open(users=account_id)
            self._dm_channels[account_id] = response["channel"]["id"]
        return self._dm_channels[account_id]

"""Tests for the Telegram adapter: 명령 파싱, 채널 복구, 메시지 흐름."""

import itertools
import logging
from unittest.mock import AsyncMock, MagicMock

import pytest
from telegram import BotCommandScopeAllPrivateChats, BotCommandScopeChatAdministrators, ReplyKeyboardMarkup
from telegram.error import BadRequest

from botmux.models.menu import ReplyMenu
from botmux.platforms.dispatcher import RateLimit
from botmux.platforms.telegram_bot import (
    TelegramAdapter,
    TelegramChannel,
    mentions_bot,
    parse_command,
    strip_mention,
)
from botmux.services.events import BotEvent

FAST = RateLimit(1000, 1.0)
LOG_CHAT = -100
STATUS_CHAT = -200


def make_bot():
    bot = AsyncMock()
    ids = itertools.count(500)
    bot.send_message.side_effect = lambda *args, **kwargs: MagicMock(message_id=next(ids))
    bot.edit_message_text.side_effect = lambda text, chat_id, message_id: MagicMock(
        message_id=message_id
    )
    return bot


def make_message(
    text,
    chat_id=1,
    chat_type="private",
    user_id=1,
    username="ada",
    message_id=10,
):
    message = MagicMock()
    message.text = text
    message.message_id = message_id
    message.chat.id = chat_id
    message.chat.type = chat_type
    message.from_user.id = user_id
    message.from_user.full_name = "Ada Lovelace"
    message.from_user.username = username
    message.migrate_to_chat_id = None
    message.new_chat_members = ()
    message.left_chat_member = None
    message.pinned_message = None
    message.reply_to_message = None
    return message


@pytest.fixture
def bot():
    return make_bot()


@pytest.fixture
def adapter(registry, bot):
    adapter = TelegramAdapter(
        registry,
        token="",
        log_channel_id=LOG_CHAT,
        status_channel_id=STATUS_CHAT,
        admin_allowlist=[],
        rate_limit=FAST,
        bot=bot,
    )
    adapter.bot_username = "muxbot"
    adapter._ready = True
    return adapter


async def drain(adapter):
    for channel in list(adapter._channels.values()):
        await channel.dispatcher.drain()


# ── Parsing ───────────────────────────────────────────────


def test_parse_command():
    invocation, target = parse_command("/Greet@muxbot Ada Lovelace")
    assert invocation.name == "greet"
    assert invocation.argument_text == "Ada Lovelace"
    assert target == "muxbot"

    invocation, target = parse_command("/ping")
    assert invocation.name == "ping"
    assert target is None


@pytest.mark.parametrize("text", ["hello", "/", "", "a /ping"])
def test_parse_command_rejects_plain_text(text):
    assert parse_command(text) == (None, None)


def test_mentions():
    assert mentions_bot("hey @MuxBot what's up", "muxbot")
    assert not mentions_bot("hey @muxbotfan", "muxbot")
    assert strip_mention("@muxbot /ping", "muxbot") == "/ping"


# ── Channel recovery ──────────────────────────────────────


@pytest.mark.asyncio
async def test_send_retries_without_reply_target(bot):
    message = MagicMock(message_id=7)
    bot.send_message.side_effect = [BadRequest("Message to be replied not found"), message]
    channel = TelegramChannel(bot, 1, FAST)

    assert await channel.send_message("hi", reply_to=99) is message

    first, second = bot.send_message.call_args_list
    assert first.kwargs["reply_parameters"].message_id == 99
    assert second.kwargs["reply_parameters"] is None


@pytest.mark.asyncio
async def test_send_without_reply_target_raises(bot):
    bot.send_message.side_effect = BadRequest("Chat not found")
    channel = TelegramChannel(bot, 1, FAST)

    with pytest.raises(BadRequest):
        await channel.send_message("hi")


@pytest.mark.asyncio
async def test_edit_unchanged_is_noop(bot):
    bot.edit_message_text.side_effect = BadRequest("Message is not modified: same content")
    channel = TelegramChannel(bot, 1, FAST)

    assert await channel.edit_message(5, "same") is None
    bot.send_message.assert_not_called()


@pytest.mark.asyncio
async def test_edit_missing_message_sends_new(bot):
    bot.edit_message_text.side_effect = BadRequest("Message to edit not found")
    channel = TelegramChannel(bot, 1, FAST)

    message = await channel.edit_message(5, "fresh")

    assert message.message_id == 500
    assert bot.send_message.call_args.args == (1, "fresh")


@pytest.mark.asyncio
async def test_delete_failure_is_logged(bot, caplog):
    bot.delete_message.side_effect = BadRequest("Message can't be deleted")
    channel = TelegramChannel(bot, 1, FAST)

    assert await channel.delete_message(5) is False
    assert "Could not delete" in caplog.text


# ── Inbound flow ──────────────────────────────────────────


@pytest.mark.asyncio
async def test_ping_in_dm(adapter, bot):
    async def on_command(interaction):
        await interaction.reply("pong")

    adapter.events.subscribe(BotEvent.COMMAND_RECEIVED, on_command)

    interaction = await adapter.process_message(make_message("/ping"))

    assert interaction.command.name == "ping"
    assert interaction.source.account.handle == "@ada"
    assert interaction.source.is_direct
    bot.send_message.assert_awaited_once()
    call = bot.send_message.call_args
    assert call.args == (1, "pong")
    assert call.kwargs["reply_parameters"].message_id == 10
    bot.send_chat_action.assert_awaited()


@pytest.mark.asyncio
async def test_group_message_needs_mention(adapter):
    commands = []
    adapter.events.subscribe(BotEvent.COMMAND_RECEIVED, commands.append)

    ignored = await adapter.process_message(make_message("/ping", chat_id=-5, chat_type="group"))
    handled = await adapter.process_message(
        make_message("/ping@muxbot", chat_id=-5, chat_type="group", message_id=11)
    )

    assert ignored is None
    assert commands == [handled]
    assert not handled.source.is_direct


@pytest.mark.asyncio
async def test_command_for_other_bot_is_ignored(adapter):
    texts = []
    adapter.events.subscribe(BotEvent.TEXT_RECEIVED, texts.append)

    assert await adapter.process_message(make_message("/ping@otherbot")) is None
    assert texts == []


@pytest.mark.asyncio
async def test_unknown_command_becomes_text(adapter):
    texts = []
    adapter.events.subscribe(BotEvent.TEXT_RECEIVED, texts.append)

    interaction = await adapter.process_message(make_message("/weather"))

    assert texts == [interaction]
    assert interaction.text == "/weather"


@pytest.mark.asyncio
async def test_follow_up_then_reply_edits(adapter, bot):
    async def on_command(interaction):
        await interaction.reply(f"Hello, {interaction.fields['name']}!")

    adapter.events.subscribe(BotEvent.COMMAND_RECEIVED, on_command)

    interaction = await adapter.process_message(make_message("/greet"))
    assert bot.send_message.call_args.args == (1, "What is name?")
    prompt_id = interaction.bot_message.message_id

    await adapter.process_message(make_message("Ada", message_id=12))

    bot.edit_message_text.assert_awaited_once_with(
        "Hello, Ada!", chat_id=1, message_id=prompt_id
    )


@pytest.mark.asyncio
async def test_menu_keyboard_then_fresh_reply(adapter, bot):
    chosen = []

    async def on_choice(interaction, key):
        chosen.append(key)
        await interaction.reply(f"You picked {key}")

    async def on_command(interaction):
        menu = ReplyMenu("fruit", {"apple": "Apple", "banana": "Banana"}, on_choice)
        await interaction.reply_with_options(menu, "Which fruit?")

    adapter.events.subscribe(BotEvent.COMMAND_RECEIVED, on_command)

    interaction = await adapter.process_message(make_message("/fruit"))
    call = bot.send_message.call_args
    assert call.args == (1, "Which fruit?\n1: Apple\n2: Banana")
    keyboard = call.kwargs["reply_markup"]
    assert isinstance(keyboard, ReplyKeyboardMarkup)
    assert [b.text for b in keyboard.keyboard[0]] == ["1", "2"]
    menu_id = interaction.bot_message.message_id

    await adapter.process_message(make_message("2", message_id=12))
    await drain(adapter)

    assert chosen == ["banana"]
    bot.delete_message.assert_any_await(1, menu_id)
    assert bot.send_message.call_args.args == (1, "You picked banana")
    assert interaction.bot_message_has_menu is False


@pytest.mark.asyncio
async def test_group_keyboard_answer_without_mention(adapter, bot):
    chosen = []

    async def on_choice(interaction, key):
        chosen.append(key)
        await interaction.reply(f"You picked {key}")

    async def on_command(interaction):
        menu = ReplyMenu("fruit", {"apple": "Apple", "banana": "Banana"}, on_choice)
        await interaction.reply_with_options(menu, "Which fruit?")

    adapter.events.subscribe(BotEvent.COMMAND_RECEIVED, on_command)

    interaction = await adapter.process_message(
        make_message("@muxbot /fruit", chat_id=-5, chat_type="group")
    )
    # 다른 사람의 "1"은 메뉴 답이 아니다
    assert await adapter.process_message(
        make_message("1", chat_id=-5, chat_type="group", user_id=2, message_id=11)
    ) is None

    answered = await adapter.process_message(
        make_message("2", chat_id=-5, chat_type="group", message_id=12)
    )
    await drain(adapter)

    assert answered is interaction
    assert chosen == ["banana"]
    assert bot.send_message.call_args.args == (-5, "You picked banana")


@pytest.mark.asyncio
async def test_group_follow_up_without_mention(adapter, bot):
    async def on_command(interaction):
        await interaction.reply(f"Hello, {interaction.fields['name']}!")

    adapter.events.subscribe(BotEvent.COMMAND_RECEIVED, on_command)

    interaction = await adapter.process_message(
        make_message("@muxbot /greet", chat_id=-5, chat_type="group")
    )
    assert bot.send_message.call_args.args == (-5, "What is name?")

    await adapter.process_message(make_message("Ada", chat_id=-5, chat_type="group", message_id=12))

    assert interaction.fields == {"name": "Ada"}
    bot.edit_message_text.assert_awaited_once_with(
        "Hello, Ada!", chat_id=-5, message_id=interaction.bot_message.message_id
    )


@pytest.mark.asyncio
async def test_group_reply_to_bot_is_handled(adapter):
    texts = []
    adapter.events.subscribe(BotEvent.TEXT_RECEIVED, texts.append)

    message = make_message("thanks", chat_id=-5, chat_type="group")
    message.reply_to_message = MagicMock()
    message.reply_to_message.from_user.is_bot = True
    message.reply_to_message.from_user.username = "MuxBot"

    interaction = await adapter.process_message(message)

    assert texts == [interaction]
    assert interaction.text == "thanks"
    assert await adapter.process_message(
        make_message("chatter", chat_id=-5, chat_type="group", message_id=11)
    ) is None


@pytest.mark.asyncio
async def test_service_messages_are_deleted(adapter, bot):
    message = make_message(None, chat_id=-5, chat_type="group", message_id=33)
    message.new_chat_members = (MagicMock(),)

    assert await adapter.process_message(message) is None
    await drain(adapter)

    bot.delete_message.assert_awaited_once_with(-5, 33)


@pytest.mark.asyncio
async def test_status_chat_migration(adapter, bot):
    message = make_message(None, chat_id=STATUS_CHAT, chat_type="group")
    message.migrate_to_chat_id = -300
    old_channel = adapter.channel(STATUS_CHAT)

    await adapter.process_message(message)
    await drain(adapter)

    assert adapter.status_channel_id == -300
    assert STATUS_CHAT not in adapter._channels
    assert old_channel.stopping
    assert "-300" in adapter.engine.admin_policy.sanctioned_destinations
    chat_id, text = bot.send_message.call_args.args
    assert chat_id == LOG_CHAT
    assert text.startswith("[ERROR] ALERT")
    assert "STATUS CHANNEL" in text


# ── Status & log ──────────────────────────────────────────


@pytest.mark.asyncio
async def test_status_created_once_then_edited(adapter, bot):
    await adapter.create_or_update_status("Starting")
    await adapter.create_or_update_status("Running")
    await adapter.create_or_update_status("Running")
    await drain(adapter)

    bot.send_message.assert_awaited_once()
    assert bot.send_message.call_args.args == (STATUS_CHAT, "Starting")
    bot.edit_message_text.assert_awaited_once_with("Running", chat_id=STATUS_CHAT, message_id=500)


@pytest.mark.asyncio
async def test_one_time_status_with_notification_pins(adapter, bot):
    await adapter.send_one_time_status("Deploying", notify=True)
    await drain(adapter)

    assert bot.send_message.call_args.kwargs["disable_notification"] is False
    bot.pin_chat_message.assert_awaited_once()
    bot.unpin_chat_message.assert_awaited_once_with(STATUS_CHAT, message_id=500)


@pytest.mark.asyncio
async def test_replace_status(adapter, bot):
    await adapter.create_or_update_status("Running")
    await drain(adapter)

    await adapter.replace_status("Was running")
    await drain(adapter)

    repost = bot.send_message.call_args
    assert repost.args == (STATUS_CHAT, "Running")
    assert repost.kwargs["disable_notification"] is True
    bot.edit_message_text.assert_awaited_once_with(
        "Was running", chat_id=STATUS_CHAT, message_id=500
    )
    assert adapter._status_message_id == 501


@pytest.mark.asyncio
async def test_debug_log_stays_local(adapter, bot):
    await adapter.log("noise", logging.DEBUG)
    await adapter.log("hello", logging.WARNING)
    await drain(adapter)

    bot.send_message.assert_awaited_once()
    assert bot.send_message.call_args.args == (LOG_CHAT, "[WARNING] hello")


@pytest.mark.asyncio
async def test_push_commands_splits_admin_commands(adapter, bot):
    await adapter.push_commands()

    calls = bot.set_my_commands.call_args_list
    scopes = [call.kwargs["scope"] for call in calls]
    admin_calls = [c for c, s in zip(calls, scopes) if isinstance(s, BotCommandScopeChatAdministrators)]
    private_calls = [c for c, s in zip(calls, scopes) if isinstance(s, BotCommandScopeAllPrivateChats)]

    assert {c.kwargs["scope"].chat_id for c in admin_calls} == {LOG_CHAT, STATUS_CHAT}
    assert [cmd.command for cmd in admin_calls[0].args[0]] == ["shutdown"]
    assert [cmd.command for cmd in private_calls[0].args[0]] == ["ping", "greet", "book", "fruit"]

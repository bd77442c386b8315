"""Entry point: starts the configured platforms and a small demo host."""

import asyncio
import logging
import signal
from logging.handlers import RotatingFileHandler
from pathlib import Path

from config.settings import settings
from botmux.models.command import Command, CommandField
from botmux.models.interaction import CommandInteraction, Interaction
from botmux.models.menu import ReplyMenu
from botmux.services.orchestrator import Orchestrator

BASE_DIR = Path(__file__).resolve().parent.parent.parent

# ── Logging ────────────────────────────────────────────────


def setup_logging() -> None:
    log_dir = BASE_DIR / "logs"
    log_dir.mkdir(exist_ok=True)
    level = logging.getLevelName(settings.log_level.upper())

    formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # File handler
    fh = RotatingFileHandler(
        log_dir / "botmux.log",
        maxBytes=5 * 1024 * 1024,  # 5 MB
        backupCount=3,
        encoding="utf-8",
    )
    fh.setFormatter(formatter)
    fh.setLevel(level)

    # Console handler
    ch = logging.StreamHandler()
    ch.setFormatter(formatter)
    ch.setLevel(level)

    root = logging.getLogger()
    root.setLevel(level)
    root.addHandler(fh)
    root.addHandler(ch)

    # Quiet noisy loggers
    for name in ("httpx", "httpcore", "telegram", "slack_bolt", "apscheduler"):
        logging.getLogger(name).setLevel(logging.WARNING)


# ── Demo host ──────────────────────────────────────────────

FRUITS = {"apple": "Apple", "banana": "Banana", "cherry": "Cherry"}


def register_demo(orchestrator: Orchestrator) -> None:
    orchestrator.register_command(Command(name="ping", description="Check the bot is alive"))
    orchestrator.register_command(
        Command(
            name="greet",
            description="Say hello to someone",
            fields=[CommandField(name="name", description="Who to greet", required=True)],
        )
    )
    orchestrator.register_command(Command(name="fruit", description="Pick a fruit"))

    async def on_fruit(interaction: Interaction, key: str) -> None:
        await interaction.reply(f"You picked {FRUITS[key]}.")
        await interaction.end()

    async def on_command(interaction: CommandInteraction) -> None:
        name = interaction.command.name
        if name == "ping":
            await interaction.reply("pong")
            await interaction.end()
        elif name == "greet":
            await interaction.reply(f"Hello, {interaction.fields['name']}!")
            await interaction.end()
        elif name == "fruit":
            await interaction.reply_with_options(
                ReplyMenu("fruit", FRUITS, on_fruit), "Which fruit?"
            )

    async def on_text(interaction: Interaction) -> None:
        names = ", ".join(f"/{c.name}" for c in orchestrator.registry)
        await interaction.reply(f"Try one of: {names}")
        await interaction.end()

    async def on_ready(adapter) -> None:
        await adapter.create_or_update_status(f"{adapter.name} online")

    orchestrator.register_command_handler(on_command)
    orchestrator.register_text_handler(on_text)
    orchestrator.register_ready_handler(on_ready)


# ── Main ───────────────────────────────────────────────────


async def main() -> None:
    setup_logging()
    logger = logging.getLogger(__name__)
    logger.info("Starting botmux...")

    from botmux.models.database import init_db

    await init_db()
    logger.info("Database initialized")

    orchestrator = Orchestrator()
    register_demo(orchestrator)

    if settings.telegram_bot_token:
        from botmux.platforms.telegram_bot import TelegramAdapter

        orchestrator.add_adapter(TelegramAdapter(orchestrator.registry))

    if settings.slack_bot_token and settings.slack_app_token:
        from botmux.platforms.slack_bot import SlackAdapter

        orchestrator.add_adapter(SlackAdapter(orchestrator.registry))

    if not orchestrator.adapters:
        logger.error("No platform configured, set Telegram or Slack tokens in .env")
        return

    await orchestrator.start()

    from botmux.scheduler.interaction_sweeper import InteractionSweeper

    sweeper = InteractionSweeper(orchestrator.adapters)
    await sweeper.start()

    # Wait for shutdown signal
    stop_event = asyncio.Event()

    def _signal_handler() -> None:
        logger.info("Shutdown signal received")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    logger.info("botmux is running! Press Ctrl+C to stop.")
    await stop_event.wait()

    # Cleanup
    logger.info("Shutting down...")
    await sweeper.stop()
    await orchestrator.stop()
    logger.info("Goodbye!")


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()

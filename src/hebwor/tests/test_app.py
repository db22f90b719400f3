"""Tests for the main application."""
from unittest.mock import AsyncMock, MagicMock

import pytest

from hebwor.app import HebBot
from hebwor.config import settings


@pytest.fixture
def mock_app() -> AsyncMock:
    """Create a mock Telegram application."""
    app = AsyncMock()
    app.add_handler = MagicMock()
    app.add_error_handler = MagicMock()
    app.updater = AsyncMock()
    app.updater.running = True
    app.running = True
    return app


@pytest.fixture
def bot(mocker, mock_app: AsyncMock) -> HebBot:
    """Create a bot instance with a mocked Telegram application."""
    builder = MagicMock()
    builder.token.return_value.build.return_value = mock_app
    mocker.patch("hebwor.app.Application.builder", return_value=builder)
    mocker.patch("hebwor.app.init_db")
    return HebBot()


def test_build_application_registers_handlers(bot: HebBot, mock_app: AsyncMock) -> None:
    """Test handler registration."""
    assert bot.build_application() is mock_app
    assert mock_app.add_handler.call_count == 2
    mock_app.add_error_handler.assert_called_once()


@pytest.mark.asyncio
async def test_start_polling(bot: HebBot, mock_app: AsyncMock, mocker) -> None:
    """Test starting the bot with long polling."""
    mocker.patch.object(settings.bot, "webhook_url", None)

    await bot.start()

    assert bot.running
    assert bot.application is mock_app
    mock_app.initialize.assert_awaited_once()
    mock_app.start.assert_awaited_once()
    mock_app.updater.start_polling.assert_awaited_once()
    mock_app.updater.start_webhook.assert_not_awaited()

    await bot.stop()


@pytest.mark.asyncio
async def test_start_webhook(bot: HebBot, mock_app: AsyncMock, mocker) -> None:
    """Test starting the bot with a webhook."""
    mocker.patch.object(settings.bot, "webhook_url", "https://example.org/hook")

    await bot.start()

    mock_app.updater.start_webhook.assert_awaited_once()
    assert mock_app.updater.start_webhook.call_args.kwargs["webhook_url"] == "https://example.org/hook"
    mock_app.updater.start_polling.assert_not_awaited()

    await bot.stop()


@pytest.mark.asyncio
async def test_stop(bot: HebBot, mock_app: AsyncMock) -> None:
    """Test stopping the bot."""
    await bot.start()
    await bot.stop()

    assert not bot.running
    assert bot.application is None
    mock_app.updater.stop.assert_awaited_once()
    mock_app.stop.assert_awaited_once()
    mock_app.shutdown.assert_awaited_once()


@pytest.mark.asyncio
async def test_start_fails_on_invalid_settings(bot: HebBot, mocker) -> None:
    """Test that invalid settings stop the start."""
    mocker.patch.object(settings.bot, "token", "")

    with pytest.raises(ValueError):
        await bot.start()

    assert not bot.running
    assert bot.application is None

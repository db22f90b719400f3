"""Main application: Telegram application setup and lifecycle."""
import asyncio
import logging
from typing import Optional

from telegram import Update
from telegram.ext import Application, CallbackQueryHandler, CommandHandler

from hebwor.bot import handle_callback, handle_error, handle_start
from hebwor.config import ensure_directories, settings
from hebwor.logging_config import setup_logging
from hebwor.models.base import init_db
from hebwor.monitoring import start_monitoring


class HebBot:
    """Main application class."""

    def __init__(self):
        """Initialize the application."""
        self.application: Optional[Application] = None
        self.running = False
        self.logger = logging.getLogger(__name__)

    def build_application(self) -> Application:
        """Create the Telegram application and register the handlers."""
        application = Application.builder().token(settings.bot.token).build()
        application.add_handler(CommandHandler("start", handle_start))
        application.add_handler(CallbackQueryHandler(handle_callback))
        application.add_error_handler(handle_error)
        return application

    async def start(self) -> None:
        """Start the application."""
        if self.running:
            return

        try:
            settings.validate()

            init_db()
            self.logger.info("Database initialized")

            if settings.metrics.port:
                start_monitoring(settings.metrics.port)
                self.logger.info(f"Metrics server listening on port {settings.metrics.port}")

            self.application = self.build_application()
            self.logger.info("Application created")

            await self.application.initialize()
            await self.application.start()
            if settings.bot.webhook_url:
                await self.application.updater.start_webhook(
                    listen="0.0.0.0",
                    port=settings.bot.webhook_port,
                    webhook_url=settings.bot.webhook_url,
                    allowed_updates=Update.ALL_TYPES,
                )
                self.logger.info(f"Webhook set to {settings.bot.webhook_url}")
            else:
                await self.application.updater.start_polling(allowed_updates=Update.ALL_TYPES)
                self.logger.info("Polling started")

            self.running = True

        except Exception as e:
            self.logger.error(f"Failed to start application: {e}")
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop the application."""
        if self.application is None:
            self.running = False
            return

        try:
            if self.application.updater and self.application.updater.running:
                await self.application.updater.stop()
            if self.application.running:
                await self.application.stop()
            await self.application.shutdown()
            self.logger.info("Application stopped")
        finally:
            self.application = None
            self.running = False


async def run() -> None:
    """Run the bot until cancelled."""
    bot = HebBot()
    await bot.start()
    try:
        while True:
            await asyncio.sleep(1)
    except asyncio.CancelledError:
        pass
    finally:
        await bot.stop()


def main() -> None:
    """Main entry point."""
    ensure_directories()
    setup_logging("Starting HebWor ...")
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        logging.getLogger(__name__).info("Received keyboard interrupt, shutting down...")


if __name__ == "__main__":
    main()

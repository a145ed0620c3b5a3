import logging

from application.ledger import LedgerEngine
from infrastructure.config import build_store, load_settings
from infrastructure.logging_config import setup_logging
from interfaces.discord.handlers import create_discord_bot


logger = logging.getLogger(__name__)


def main() -> None:
    settings = load_settings()
    setup_logging(settings.log_level, settings.log_format)

    if not settings.discord_token:
        raise RuntimeError("DISCORD_TOKEN environment variable is not set.")
    if settings.admin_role_id is None:
        logger.warning("ADMIN_ROLE_ID is not set; admin commands will be refused.")

    store = build_store(settings)
    engine = LedgerEngine(store, settings.ledger_policy)
    if not engine.verify_ledger():
        logger.error("Ledger does not reconcile at startup; run !admin-verifyledger for details.")

    bot = create_discord_bot(engine, settings)
    bot.run(settings.discord_token, log_handler=None)


if __name__ == "__main__":
    main()

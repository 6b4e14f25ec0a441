# src/cryptomon/main.py
import os
import asyncio
import signal
import structlog
from dotenv import load_dotenv
from redis.asyncio import Redis

from cryptomon.config import (
    dispatch_config_from_env,
    env_flag,
    monitor_config_from_env,
    provider_config_from_env,
    store_config_from_env,
    telegram_config_from_env,
)
from cryptomon.errors import ConfigError, DeliveryFailed
from cryptomon.ingest.coingecko import CoinGeckoPriceSource
from cryptomon.notify.channels import ConsoleChannel
from cryptomon.notify.dispatcher import NotificationDispatcher
from cryptomon.notify.telegram import TelegramChannel
from cryptomon.scheduler import PollScheduler
from cryptomon.utils.logging import configure_logging
from storage.redis_alerts import RedisAlertStore

load_dotenv()
log = structlog.get_logger()


# ---------------------------
# Telegram startup check
# ---------------------------

async def telegram_startup_check(tg: TelegramChannel) -> None:
    try:
        await tg.verify()
    except DeliveryFailed as e:
        # keep running; deliveries will fail and be dead-lettered until fixed
        log.warning("telegram_verify_failed", err=str(e))


def install_signal_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            # e.g. Windows event loops
            pass


# ---------------------------
# Main
# ---------------------------

async def main():
    configure_logging(os.getenv("LOG_LEVEL", "INFO"), json=env_flag("LOG_JSON"))

    monitor_cfg = monitor_config_from_env()
    provider_cfg = provider_config_from_env(monitor_cfg.poll_interval_s)
    dispatch_cfg = dispatch_config_from_env()
    store_cfg = store_config_from_env()

    # Store
    redis_client = Redis.from_url(store_cfg.redis_url, decode_responses=True)
    store = RedisAlertStore(redis_client, read_retries=store_cfg.read_retries, retry_backoff_s=store_cfg.retry_backoff_s)

    # Price source
    source = CoinGeckoPriceSource(provider_cfg)
    await source.start()

    # ----- Notifications -----
    channels = [ConsoleChannel()]
    tg = None
    try:
        tg = TelegramChannel(telegram_config_from_env())
        await tg.start()
        channels.append(tg)
        log.info("telegram_enabled")
    except ConfigError:
        log.info("telegram_disabled_missing_env")
    dispatcher = NotificationDispatcher(channels, store, dispatch_cfg)

    if tg is not None:
        await telegram_startup_check(tg)

    stop = asyncio.Event()
    install_signal_handlers(stop)
    scheduler = PollScheduler(store, source, dispatcher, monitor_cfg)

    try:
        await scheduler.run(monitor_cfg.poll_interval_s, stop)
    finally:
        # graceful shutdown to avoid unclosed sessions
        await source.stop()
        if tg is not None:
            await tg.stop()
        await store.close()


def cli() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
    except ConfigError as e:
        log.error("config_invalid", err=str(e))
        raise SystemExit(2) from None


if __name__ == "__main__":
    cli()

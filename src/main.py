"""Runtime: HTTP tool surface plus the protection watchdog."""

from __future__ import annotations

import asyncio

import structlog
import uvicorn

from src.api.tools import create_app
from src.config import Settings, load_settings
from src.connectors import BinanceMarginRestClient, BinanceMarginVenue, BinanceMarketData
from src.errors import MarginEngineError
from src.execution.engine import MarginTradingEngine
from src.monitoring import Metrics, bind_runtime_context, configure_logging

log = structlog.get_logger(__name__)


def build_engine(settings: Settings, rest: BinanceMarginRestClient) -> MarginTradingEngine:
    venue = BinanceMarginVenue(rest)
    market_data = BinanceMarketData(venue)
    return MarginTradingEngine(settings, venue, market_data)


async def watchdog_cycle(engine: MarginTradingEngine, settings: Settings) -> None:
    """One pass: risk snapshot, protection sweep, exit-plan review."""
    risk = await engine.get_liquidation_risk()
    log.info(
        "risk_snapshot",
        margin_level=risk.margin_level,
        risk_level=risk.risk_tier.value,
        recommendation=risk.recommendation,
    )

    allowed, reasons = settings.trading_gate()
    if settings.watchdog.auto_recover and allowed:
        results = await engine.protect_unprotected_positions()
        failed = [r for r in results if r["status"] == "failed"]
        if failed:
            log.error("watchdog_protection_failures", failures=failed)
    else:
        unprotected = await engine.get_unprotected_positions()
        if unprotected:
            log.warning(
                "unprotected_positions_detected",
                symbols=[item.position.symbol for item in unprotected],
                auto_recover=settings.watchdog.auto_recover,
                blocked_by=reasons,
            )

    if settings.watchdog.check_exit_plans:
        for review in await engine.check_all_exit_plans():
            if review.check is not None and review.check.should_invalidate:
                log.warning(
                    "exit_plan_close_recommended",
                    symbol=review.symbol,
                    recommendation=review.recommendation,
                )


async def main_async() -> None:
    settings = load_settings()
    configure_logging(settings.monitoring.log_level, settings.storage.logs_path, settings.monitoring)
    bind_runtime_context(run_mode=settings.run.mode, margin_mode=settings.margin.mode)

    allowed, reasons = settings.trading_gate()
    if not allowed:
        log.warning("trading_disabled", reasons=reasons, run_mode=settings.run.mode)

    rest = BinanceMarginRestClient(settings)
    try:
        await rest.sync_server_time()
    except Exception as exc:
        log.warning("server_time_sync_failed", error=str(exc))

    metrics = Metrics()
    try:
        metrics.start(settings.monitoring.metrics_port)
    except Exception as exc:
        log.warning("metrics_start_failed", error=str(exc))
    rest.set_metrics(metrics)

    engine = build_engine(settings, rest)
    engine.set_metrics(metrics)
    log.info(
        "engine_started",
        run_mode=settings.run.mode,
        margin_mode=settings.margin.mode,
        settlement_asset=settings.margin.settlement_asset,
        exit_plans_persistent=settings.storage.persist_exit_plans,
    )

    async def time_sync_loop() -> None:
        while True:
            await asyncio.sleep(settings.binance.time_sync_interval_sec)
            try:
                await rest.sync_server_time()
            except Exception as exc:
                log.warning("server_time_sync_failed", error=str(exc))

    async def watchdog_loop() -> None:
        """Periodic watchdog to keep open positions protected."""
        if not settings.watchdog.enabled:
            log.info("watchdog_disabled")
            return
        while True:
            metrics.tick("watchdog")
            try:
                await watchdog_cycle(engine, settings)
            except MarginEngineError as exc:
                log.warning("watchdog_cycle_failed", error=str(exc))
            await asyncio.sleep(settings.watchdog.interval_sec)

    async def api_server() -> None:
        """Run the tool API server."""
        try:
            config = uvicorn.Config(
                create_app(engine),
                host=settings.monitoring.api_host,
                port=settings.monitoring.api_port,
                log_level=settings.monitoring.log_level.lower(),
            )
            server = uvicorn.Server(config)
            await server.serve()
        except Exception as exc:
            log.warning("api_server_failed", error=str(exc))

    try:
        await asyncio.gather(
            time_sync_loop(),
            watchdog_loop(),
            api_server(),
            return_exceptions=True,
        )
    finally:
        await rest.close()


def main() -> None:
    asyncio.run(main_async())


if __name__ == "__main__":
    main()

"""Prometheus metrics definitions."""

from __future__ import annotations

import time

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, REGISTRY, start_http_server

from src.risk.engine import TIER_SEVERITY, RiskAssessment


class Metrics:
    """Expose margin engine metrics for monitoring."""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or REGISTRY
        registry = self.registry

        self.rest_request_latency_ms = Histogram(
            "rest_request_latency_ms", "REST latency (ms)", registry=registry
        )
        self.rest_errors_total = Counter(
            "rest_errors_total", "REST errors by kind", ["kind"], registry=registry
        )
        self.binance_used_weight_1m = Gauge(
            "binance_used_weight_1m",
            "Actual used weight from Binance x-mbx-used-weight-1m header",
            registry=registry,
        )
        self.loop_last_tick_age_sec = Gauge(
            "loop_last_tick_age_sec",
            "Seconds since the loop last ticked",
            ["loop"],
            registry=registry,
        )

        self.margin_level = Gauge("margin_level", "Account margin level", registry=registry)
        self.risk_tier = Gauge(
            "risk_tier",
            "Liquidation risk tier (0=LOW .. 4=LIQUIDATION_IMMINENT)",
            registry=registry,
        )
        self.total_liability_btc = Gauge(
            "total_liability_btc", "Total margin liability in BTC", registry=registry
        )
        self.open_positions = Gauge("open_positions", "Number of open positions", registry=registry)
        self.unprotected_positions = Gauge(
            "unprotected_positions",
            "Positions without a protective stop or take-profit",
            registry=registry,
        )
        self.protection_outcomes_total = Counter(
            "protection_outcomes_total",
            "Protection attempts by outcome kind",
            ["kind"],
            registry=registry,
        )
        self.borrowed_total = Counter(
            "borrowed_total",
            "Amount borrowed by asset",
            ["asset"],
            registry=registry,
        )
        self.entries_adjusted_total = Counter(
            "entries_adjusted_total",
            "Leveraged entries shrunk to fit borrow capacity",
            registry=registry,
        )
        self.exit_plans = Gauge("exit_plans", "Exit plans being tracked", registry=registry)

        self._last_tick: dict[str, float] = {}

    def start(self, port: int) -> None:
        start_http_server(port, registry=self.registry)

    def update_risk(self, assessment: RiskAssessment) -> None:
        self.margin_level.set(assessment.margin_level)
        self.risk_tier.set(TIER_SEVERITY[assessment.risk_tier])
        self.total_liability_btc.set(assessment.total_liability)

    def tick(self, loop: str) -> None:
        now = time.time()
        previous = self._last_tick.get(loop)
        self.loop_last_tick_age_sec.labels(loop=loop).set(now - previous if previous else 0.0)
        self._last_tick[loop] = now

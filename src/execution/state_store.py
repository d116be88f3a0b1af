"""Exit plan table, optionally persisted so plans survive process restarts."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any

import orjson
import structlog

from src.errors import ValidationError
from src.models import ExitPlan


class ExitPlanStore:
    """One exit plan per symbol; reads return snapshots, writes are serialized."""

    def __init__(self, state_path: str | Path | None = None) -> None:
        self._plans: dict[str, ExitPlan] = {}
        self._lock = asyncio.Lock()
        self._file: Path | None = None
        self.log = structlog.get_logger(__name__)
        if state_path is not None:
            directory = Path(state_path)
            directory.mkdir(parents=True, exist_ok=True)
            self._file = directory / "exit_plans.json"
            self._plans = self._load_all()

    @property
    def persistent(self) -> bool:
        return self._file is not None

    def get(self, symbol: str) -> ExitPlan | None:
        return self._plans.get(symbol.upper())

    def all(self) -> dict[str, ExitPlan]:
        return dict(self._plans)

    async def put(self, plan: ExitPlan) -> ExitPlan | None:
        """Store ``plan``, returning the plan it replaced."""
        async with self._lock:
            previous = self._plans.get(plan.symbol)
            self._plans[plan.symbol] = plan
            self._save_all()
        return previous

    async def mark_checked(self, plan: ExitPlan, status: str, checked_at: datetime) -> ExitPlan | None:
        """Record a check result only if ``plan`` is still the stored plan for its symbol."""
        async with self._lock:
            current = self._plans.get(plan.symbol)
            if current is None or not _same_plan(current, plan):
                return None
            updated = replace(current, status=status, checked_at=checked_at)
            self._plans[plan.symbol] = updated
            self._save_all()
        return updated

    async def remove(self, symbol: str) -> bool:
        async with self._lock:
            removed = self._plans.pop(symbol.upper(), None) is not None
            if removed:
                self._save_all()
        return removed

    async def clear(self) -> None:
        async with self._lock:
            self._plans.clear()
            self._save_all()

    def _load_all(self) -> dict[str, ExitPlan]:
        if self._file is None or not self._file.exists():
            return {}
        try:
            with open(self._file, "rb") as f:
                data: Any = orjson.loads(f.read())
        except (OSError, orjson.JSONDecodeError) as exc:
            self.log.error("exit_plan_store_unreadable", path=str(self._file), error=str(exc))
            return {}
        if not isinstance(data, dict):
            return {}
        plans: dict[str, ExitPlan] = {}
        for symbol, payload in data.items():
            try:
                plans[symbol] = ExitPlan.from_dict(payload)
            except (KeyError, TypeError, ValueError, ValidationError) as exc:
                self.log.warning("exit_plan_discarded", symbol=symbol, error=str(exc))
        return plans

    def _save_all(self) -> None:
        if self._file is None:
            return
        payload = {symbol: plan.to_dict() for symbol, plan in self._plans.items()}
        with open(self._file, "wb") as f:
            f.write(orjson.dumps(payload))


def _same_plan(a: ExitPlan, b: ExitPlan) -> bool:
    return a.created_at == b.created_at and a.target_price == b.target_price and a.stop_price == b.stop_price


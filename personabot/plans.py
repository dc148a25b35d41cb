import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal

from . import config

logger = logging.getLogger("personabot.plans")

HOUR_MS = 60 * 60 * 1000
DAY_MS = 24 * HOUR_MS

CAP_TEXT = 'text'
CAP_MEDIA = 'media'


@dataclass(frozen=True)
class Plan:
    id: str
    price_amount: Decimal
    duration_ms: int
    capabilities: frozenset = field(default_factory=lambda: frozenset({CAP_TEXT}))
    title: str = ''

    def has(self, capability: str) -> bool:
        return capability in self.capabilities

    @property
    def price_str(self) -> str:
        return f"{self.price_amount:.2f}"


# === PLANS ===
PLANS = {
    'p12h': {
        'price': '49.90',
        'duration_ms': 12 * HOUR_MS,
        'capabilities': [CAP_TEXT],
        'title': '12 horas comigo',
    },
    'p7d': {
        'price': '149.90',
        'duration_ms': 7 * DAY_MS,
        'capabilities': [CAP_TEXT, CAP_MEDIA],
        'title': '7 dias + fotos exclusivas',
    },
    'p30d': {
        'price': '399.90',
        'duration_ms': 30 * DAY_MS,
        'capabilities': [CAP_TEXT, CAP_MEDIA],
        'title': '30 dias VIP',
    },
}


def _plan_from_cfg(plan_id: str, cfg: dict) -> Plan:
    return Plan(
        id=plan_id,
        price_amount=Decimal(str(cfg['price'])),
        duration_ms=int(cfg['duration_ms']),
        capabilities=frozenset(cfg.get('capabilities') or [CAP_TEXT]),
        title=cfg.get('title') or plan_id,
    )


class PlanCatalog:
    """Static table of purchasable tiers. Unknown ids resolve to the default plan."""

    def __init__(self, plans: dict | None = None, default_id: str | None = None):
        raw = plans if plans is not None else PLANS
        self._plans = {pid: _plan_from_cfg(pid, cfg) for pid, cfg in raw.items()}
        if not self._plans:
            raise ValueError("plan catalog is empty")
        self.default_id = default_id or config.DEFAULT_PLAN_ID
        if self.default_id not in self._plans:
            self.default_id = next(iter(self._plans))

    @classmethod
    def from_json(cls, raw: str, default_id: str | None = None) -> 'PlanCatalog':
        return cls(json.loads(raw), default_id=default_id)

    def get_plan(self, plan_id: str | None) -> Plan:
        plan = self._plans.get(plan_id) if plan_id else None
        if plan is None:
            if plan_id:
                logger.warning(f"Unknown plan id {plan_id!r}, using default {self.default_id}")
            plan = self._plans[self.default_id]
        return plan

    def all(self) -> list[Plan]:
        return list(self._plans.values())

    def __contains__(self, plan_id) -> bool:
        return plan_id in self._plans

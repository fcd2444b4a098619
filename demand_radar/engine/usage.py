"""AI cost and usage aggregation.

Every AI call is recorded as a UsageEvent. Recording folds the event into
daily, per-model and per-session rollups inside the same transaction, using
atomic increments in the store so concurrent recorders never lose updates.
"""

import logging
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta, timezone

from demand_radar.config import get_config
from demand_radar.database import (
    DailyUsage,
    Database,
    ModelUsage,
    ROLLUP_COLUMNS,
    SessionUsage,
    UsageEvent,
    UsageTotals,
)
from demand_radar.errors import ValidationError

logger = logging.getLogger(__name__)

BATCH_DISCOUNT = 0.5
MAX_RANGE_DAYS = 366


@dataclass
class ModelPricing:
    """Per-million-token prices, optionally tiered above a token threshold."""
    input_per_million: float
    output_per_million: float
    input_per_million_high: float | None = None
    output_per_million_high: float | None = None
    token_threshold: int | None = None


PRICING = {
    "gemini-2.5-pro": ModelPricing(1.25, 10.0, 2.50, 15.0, token_threshold=200_000),
    "gemini-2.5-flash": ModelPricing(0.10, 0.40),
    "gemini-1.5-pro": ModelPricing(1.25, 5.00),
    "gemini-1.5-flash": ModelPricing(0.0, 0.0),
}


@dataclass
class CostBreakdown:
    input_cost: float
    output_cost: float
    total_cost: float


def _tiered_cost(tokens: int, rate: float, high_rate: float | None, threshold: int | None) -> float:
    if threshold is None or high_rate is None or tokens <= threshold:
        return tokens * rate / 1_000_000
    return (threshold * rate + (tokens - threshold) * high_rate) / 1_000_000


def calculate_cost(
    model: str,
    input_tokens: int,
    output_tokens: int,
    batch_mode: bool = False,
) -> CostBreakdown:
    """Price an AI call from the pricing table.

    Tokens beyond a model's threshold are billed at its high rate. Batch
    calls get BATCH_DISCOUNT. Unknown models cost nothing.
    """
    pricing = PRICING.get(model)
    if pricing is None:
        logger.warning(f"[Usage] Unknown model {model!r}, recording zero cost")
        return CostBreakdown(0.0, 0.0, 0.0)

    input_cost = _tiered_cost(
        input_tokens, pricing.input_per_million,
        pricing.input_per_million_high, pricing.token_threshold,
    )
    output_cost = _tiered_cost(
        output_tokens, pricing.output_per_million,
        pricing.output_per_million_high, pricing.token_threshold,
    )
    if batch_mode:
        input_cost *= BATCH_DISCOUNT
        output_cost *= BATCH_DISCOUNT

    return CostBreakdown(
        input_cost=round(input_cost, 6),
        output_cost=round(output_cost, 6),
        total_cost=round(input_cost + output_cost, 6),
    )


def _totals_dict(totals: UsageTotals) -> dict:
    data = asdict(totals)
    data.pop("cost_micros")
    data["total_cost"] = round(totals.total_cost, 6)
    data["total_tokens"] = totals.total_tokens
    data["average_cost_per_request"] = round(totals.average_cost_per_request, 6)
    data["success_rate"] = round(totals.success_rate, 1)
    return data


def _parse_day(value: date | str) -> date:
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Invalid date {value!r}, expected YYYY-MM-DD") from e


def today_utc() -> date:
    return datetime.now(timezone.utc).date()


@dataclass
class UsageStats:
    """Usage over an inclusive range of UTC days."""
    start_date: str
    end_date: str
    days: list[DailyUsage]
    totals: UsageTotals
    models: list[ModelUsage] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "start_date": self.start_date,
            "end_date": self.end_date,
            "days": [{"date": d.usage_date, **_totals_dict(d)} for d in self.days],
            "totals": _totals_dict(self.totals),
            "models": [{"model": m.model, **_totals_dict(m)} for m in self.models],
        }


class UsageAggregator:
    """Records AI usage events and reads back their rollups."""

    def __init__(self, db: Database):
        self.db = db
        self.config = get_config().usage

    def record_usage(self, event: UsageEvent) -> bool:
        """Record an event once, folding it into every rollup.

        Args:
            event: The usage event. When ``cost`` is None it is priced with
                calculate_cost().

        Returns:
            True if the event was new, False if its request_id was already
            recorded.

        Raises:
            ValidationError: If the event is malformed.
        """
        if not event.request_id:
            raise ValidationError("Usage event needs a request_id")
        if not event.model:
            raise ValidationError("Usage event needs a model")
        if event.input_tokens < 0 or event.output_tokens < 0:
            raise ValidationError("Token counts cannot be negative")

        cost = event.cost
        if cost is None:
            cost = calculate_cost(
                event.model, event.input_tokens, event.output_tokens, event.batch_mode
            ).total_cost
        if cost < 0:
            raise ValidationError("Cost cannot be negative")

        recorded = self.db.record_usage_event(event, round(cost * 1_000_000))
        if recorded:
            logger.debug(
                f"[Usage] {event.model} {event.operation}: "
                f"{event.input_tokens}+{event.output_tokens} tokens, ${cost:.6f}"
            )
        else:
            logger.info(f"[Usage] Ignoring re-delivered event {event.request_id}")
        return recorded

    def get_stats(self, start: date | str, end: date | str) -> UsageStats:
        """Daily rollups for every day in [start, end], zero-filled.

        Raises:
            ValidationError: If the range is inverted or too long.
        """
        start_day = _parse_day(start)
        end_day = _parse_day(end)
        if start_day > end_day:
            raise ValidationError("Start date must not be after end date")
        if (end_day - start_day).days >= MAX_RANGE_DAYS:
            raise ValidationError(f"Date range cannot exceed {MAX_RANGE_DAYS} days")

        start_iso, end_iso = start_day.isoformat(), end_day.isoformat()
        stored = {d.usage_date: d for d in self.db.get_daily_usage(start_iso, end_iso)}

        days = []
        day = start_day
        while day <= end_day:
            days.append(stored.get(day.isoformat(), DailyUsage(usage_date=day.isoformat())))
            day += timedelta(days=1)

        totals = UsageTotals()
        for daily in days:
            for column in ROLLUP_COLUMNS:
                setattr(totals, column, getattr(totals, column) + getattr(daily, column))

        per_model: dict[str, ModelUsage] = {}
        for row in self.db.get_model_usage(start_iso, end_iso):
            model = per_model.setdefault(row.model, ModelUsage(model=row.model))
            for column in ROLLUP_COLUMNS:
                setattr(model, column, getattr(model, column) + getattr(row, column))

        return UsageStats(
            start_date=start_iso,
            end_date=end_iso,
            days=days,
            totals=totals,
            models=sorted(per_model.values(), key=lambda m: (-m.cost_micros, m.model)),
        )

    def get_recent_stats(self, days: int | None = None) -> UsageStats:
        """Stats for the last ``days`` UTC days, today included."""
        days = days if days is not None else self.config.stats_days
        if isinstance(days, bool) or not isinstance(days, int) or days < 1:
            raise ValidationError("days must be a positive integer")
        end = today_utc()
        return self.get_stats(end - timedelta(days=days - 1), end)

    def get_session_stats(self, session_id: str) -> SessionUsage | None:
        return self.db.get_session_usage(session_id)

    def rebuild_daily_usage(self, day: date | str) -> DailyUsage:
        """Recompute a day's rollups from its stored events."""
        usage_date = _parse_day(day).isoformat()
        self.db.rebuild_usage_rollups(usage_date)
        logger.info(f"[Usage] Rebuilt rollups for {usage_date}")
        rows = self.db.get_daily_usage(usage_date, usage_date)
        return rows[0] if rows else DailyUsage(usage_date=usage_date)

    def check_daily_threshold(
        self,
        day: date | str | None = None,
        threshold: float | None = None,
    ) -> dict:
        """Check whether a day's spend reached the alert threshold."""
        usage_date = _parse_day(day or today_utc()).isoformat()
        threshold = threshold if threshold is not None else self.config.daily_cost_alert
        rows = self.db.get_daily_usage(usage_date, usage_date)
        total_cost = rows[0].total_cost if rows else 0.0

        exceeded = total_cost >= threshold
        if exceeded:
            logger.warning(
                f"[Usage] Daily cost ${total_cost:.2f} on {usage_date} "
                f"reached the ${threshold:.2f} alert threshold"
            )
        return {
            "date": usage_date,
            "total_cost": round(total_cost, 6),
            "threshold": threshold,
            "exceeded": exceeded,
        }

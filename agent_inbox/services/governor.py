from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from agent_inbox.storage.models import UsageRecord, utcnow
from agent_inbox.util.logger import get_logger

log = get_logger("agent_inbox.governor")

MINUTE = timedelta(minutes=1)
HOUR = timedelta(hours=1)
DAY = timedelta(days=1)


@dataclass
class RateLimitResult:
    allowed: bool
    reason: Optional[str] = None
    retry_after: Optional[int] = None     # seconds
    usage: dict = field(default_factory=dict)


def _day_start(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def _month_start(now: datetime) -> datetime:
    return _day_start(now).replace(day=1)


def _next_month(now: datetime) -> datetime:
    start = _month_start(now)
    return (start + timedelta(days=32)).replace(day=1)


class UsageGovernor:
    """
    Quota and spend caps for agent calls, counted from the usage ledger so
    every handler instance sees the same numbers.
    """

    def __init__(self, settings):
        self.per_minute = settings.requests_per_minute
        self.per_hour = settings.requests_per_hour
        self.per_day = settings.requests_per_day
        self.global_per_hour = settings.global_requests_per_hour
        self.global_per_day = settings.global_requests_per_day
        self.cost_per_request = settings.cost_per_request
        self.max_daily_spend = settings.max_daily_spend
        self.max_monthly_spend = settings.max_monthly_spend

    # ---------- ledger queries ----------
    def _count(self, db: Session, since: datetime, account_id: Optional[str] = None) -> int:
        q = db.query(func.count(UsageRecord.id)).filter(UsageRecord.created_at >= since)
        if account_id is not None:
            q = q.filter(UsageRecord.account_id == account_id)
        return q.scalar() or 0

    def _spend(self, db: Session, since: datetime) -> float:
        total = db.query(func.sum(UsageRecord.cost)).filter(UsageRecord.created_at >= since).scalar()
        return float(total or 0.0)

    def _retry_after(self, db: Session, span: timedelta, now: datetime,
                     account_id: Optional[str] = None) -> int:
        # time until the oldest call inside the rolling span ages out
        q = db.query(func.min(UsageRecord.created_at)).filter(UsageRecord.created_at >= now - span)
        if account_id is not None:
            q = q.filter(UsageRecord.account_id == account_id)
        oldest = q.scalar()
        if oldest is None:
            return int(span.total_seconds())
        return max(1, int((oldest + span - now).total_seconds()) + 1)

    # ---------- public ----------
    def check_rate_limit(self, db: Session, account_id: str, now: Optional[datetime] = None) -> RateLimitResult:
        now = now or utcnow()

        daily_spend = self._spend(db, _day_start(now))
        if daily_spend >= self.max_daily_spend:
            log.warning("daily spend cap reached spend=%.2f", daily_spend)
            return RateLimitResult(False, "Daily spending limit reached",
                                   int((_day_start(now) + DAY - now).total_seconds()),
                                   {"daily_spend": daily_spend})

        monthly_spend = self._spend(db, _month_start(now))
        if monthly_spend >= self.max_monthly_spend:
            log.warning("monthly spend cap reached spend=%.2f", monthly_spend)
            return RateLimitResult(False, "Monthly spending limit reached",
                                   int((_next_month(now) - now).total_seconds()),
                                   {"monthly_spend": monthly_spend})

        usage = {
            "minute": self._count(db, now - MINUTE, account_id),
            "hour": self._count(db, now - HOUR, account_id),
            "day": self._count(db, now - DAY, account_id),
        }
        checks = (
            ("minute", self.per_minute, MINUTE, "Too many requests per minute"),
            ("hour", self.per_hour, HOUR, "Hourly request limit reached"),
            ("day", self.per_day, DAY, "Daily request limit reached"),
        )
        for key, cap, span, reason in checks:
            if usage[key] >= cap:
                log.info("rate limited account=%s window=%s count=%s cap=%s", account_id, key, usage[key], cap)
                return RateLimitResult(False, reason, self._retry_after(db, span, now, account_id), usage)

        global_hour = self._count(db, now - HOUR)
        if global_hour >= self.global_per_hour:
            log.warning("global hourly cap reached count=%s", global_hour)
            return RateLimitResult(False, "System is busy, try again later",
                                   self._retry_after(db, HOUR, now), {**usage, "global_hour": global_hour})

        global_day = self._count(db, now - DAY)
        if global_day >= self.global_per_day:
            log.warning("global daily cap reached count=%s", global_day)
            return RateLimitResult(False, "System daily capacity reached, try again later",
                                   self._retry_after(db, DAY, now),
                                   {**usage, "global_hour": global_hour, "global_day": global_day})

        return RateLimitResult(True, usage=usage)

    def record_usage(self, db: Session, account_id: str, cost: Optional[float] = None,
                     now: Optional[datetime] = None) -> UsageRecord:
        rec = UsageRecord(
            account_id=account_id,
            cost=self.cost_per_request if cost is None else cost,
            created_at=now or utcnow(),
        )
        db.add(rec)
        db.flush()
        return rec

    def usage_stats(self, db: Session, now: Optional[datetime] = None) -> dict:
        now = now or utcnow()
        return {
            "hourly_requests": self._count(db, now - HOUR),
            "daily_requests": self._count(db, _day_start(now)),
            "last_24h_requests": self._count(db, now - DAY),
            "daily_spend": round(self._spend(db, _day_start(now)), 4),
            "monthly_spend": round(self._spend(db, _month_start(now)), 4),
            "limits": {
                "requests_per_minute": self.per_minute,
                "requests_per_hour": self.per_hour,
                "requests_per_day": self.per_day,
                "global_requests_per_hour": self.global_per_hour,
                "global_requests_per_day": self.global_per_day,
                "max_daily_spend": self.max_daily_spend,
                "max_monthly_spend": self.max_monthly_spend,
            },
        }

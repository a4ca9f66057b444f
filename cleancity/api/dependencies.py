"""
CleanCity - API Dependencies
Service wiring shared by all request handlers.
"""

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from fastapi import Depends, Request, Response

from cleancity.core.clock import Clock
from cleancity.core.config import Settings, settings as default_settings
from cleancity.database.connection import DatabaseConnection
from cleancity.events.bus import EventBus
from cleancity.events.notifier import LoggingNotifier
from cleancity.points.ledger import PointsLedger
from cleancity.reports.admission import AdmissionControl
from cleancity.reports.rate_limit import (
    CounterStore, RateLimiter, RedisCounterStore, client_ip
)
from cleancity.reports.status import StatusMachine
from cleancity.tasks.scheduler import TaskScheduler
from cleancity.verification.approval import ApprovalService
from cleancity.verification.service import VerificationService

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Every workflow service, built around one database and event bus."""
    db: DatabaseConnection
    clock: Clock
    events: EventBus
    notifier: LoggingNotifier
    admission: AdmissionControl
    status: StatusMachine
    verification: VerificationService
    ledger: PointsLedger
    approval: ApprovalService
    scheduler: TaskScheduler
    rate_limiter: RateLimiter

    @classmethod
    def build(
        cls,
        db: Optional[DatabaseConnection] = None,
        clock: Optional[Clock] = None,
        counter_store: Optional[CounterStore] = None,
        settings: Optional[Settings] = None
    ) -> "Services":
        """
        Wire services together.

        Args:
            db: Database connection (default: from settings)
            clock: Time source (default: wall clock)
            counter_store: Rate-limit store (default: Redis from settings)
            settings: Thresholds (default: global settings)
        """
        settings = settings or default_settings
        db = db or DatabaseConnection()
        clock = clock or Clock()
        events = EventBus()

        notifier = LoggingNotifier()
        notifier.attach(events)

        ledger = PointsLedger(db, clock, events)
        return cls(
            db=db,
            clock=clock,
            events=events,
            notifier=notifier,
            admission=AdmissionControl(db, clock, events, settings),
            status=StatusMachine(db, clock, events),
            verification=VerificationService(db, clock, events, settings),
            ledger=ledger,
            approval=ApprovalService(db, ledger, clock, events),
            scheduler=TaskScheduler(db, clock),
            rate_limiter=RateLimiter(
                counter_store or RedisCounterStore(url=settings.redis_url),
                settings=settings,
            ),
        )


@lru_cache()
def get_services() -> Services:
    """Process-wide services, built on first use."""
    logger.info("Building CleanCity services")
    return Services.build()


def _enforce(scope: str, request: Request, response: Response, services: Services) -> None:
    fallback = request.client.host if request.client else None
    status = services.rate_limiter.check(scope, client_ip(request.headers, fallback))
    if status is not None:
        response.headers.update(status.headers())


def api_rate_limit(
    request: Request,
    response: Response,
    services: Services = Depends(get_services)
) -> None:
    """General per-IP limit applied to every API route."""
    _enforce("api", request, response, services)


def report_rate_limit(
    request: Request,
    response: Response,
    services: Services = Depends(get_services)
) -> None:
    """Stricter per-IP limit for report submission."""
    _enforce("report", request, response, services)

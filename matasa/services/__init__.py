"""
Service wiring.

Every pipeline service is an explicit object with its collaborators
(record store, SMS gateway, clock, RNG) injected here once per app.
Blueprints and jobs reach them through ``get_services()``.

Tests rebuild the graph with a fixed clock, a seeded RNG and a fake
gateway:

    services = init_services(app, clock=lambda: NOW, rng=random.Random(7),
                             sms_gateway=RecordingGateway())
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Callable

from flask import current_app

from matasa.integrations.sms_gateway import build_sms_gateway
from matasa.services.alert_service import AlertService
from matasa.services.confidence import ConfidenceScoringService
from matasa.services.dashboard import DashboardService
from matasa.services.deduplication import DeduplicationService
from matasa.services.escalation import EscalationEngine
from matasa.services.ingestion import IncidentIngestionService
from matasa.services.notification import NotificationDispatcher
from matasa.services.rate_limiter import RateLimiterService, build_backend
from matasa.services.similarity import SimilarityEngine
from matasa.services.store import RecordStore
from matasa.services.ussd_service import UssdService
from matasa.utils.helpers import utcnow

EXTENSION_KEY = "matasa"


@dataclass
class Services:
    store: RecordStore
    similarity: SimilarityEngine
    deduplication: DeduplicationService
    confidence: ConfidenceScoringService
    dispatcher: NotificationDispatcher
    escalation: EscalationEngine
    ingestion: IncidentIngestionService
    alerts: AlertService
    dashboard: DashboardService
    rate_limiter: RateLimiterService
    ussd: UssdService


def build_services(
    config,
    *,
    clock: Callable = utcnow,
    rng: random.Random | None = None,
    sms_gateway=None,
    rate_limiter_backend=None,
    store: RecordStore | None = None,
) -> Services:
    store = store or RecordStore()
    local_tz = config.get("LOCAL_TIMEZONE", "Africa/Lagos")

    similarity = SimilarityEngine()
    deduplication = DeduplicationService(
        store,
        similarity,
        clock=clock,
        threshold=config.get("DEDUP_SIMILARITY_THRESHOLD", 60),
        window_minutes=config.get("DEDUP_TIME_WINDOW_MINUTES", 60),
        max_candidates=config.get("DEDUP_MAX_CANDIDATES", 100),
        max_results=config.get("DEDUP_MAX_RESULTS", 5),
    )
    confidence = ConfidenceScoringService(store, clock=clock, local_timezone=local_tz)
    dispatcher = NotificationDispatcher(
        store,
        sms_gateway if sms_gateway is not None else build_sms_gateway(config),
        clock=clock,
        country_code=config.get("PHONE_COUNTRY_CODE", "234"),
        max_attempts=config.get("SMS_MAX_ATTEMPTS", 3),
        request_budget_seconds=config.get("SMS_REQUEST_BUDGET_SECONDS", 2.5),
    )
    escalation = EscalationEngine(store, dispatcher, clock=clock, rng=rng, local_timezone=local_tz)
    ingestion = IncidentIngestionService(
        store, deduplication, confidence, escalation, dispatcher,
        clock=clock, default_state=config.get("DEFAULT_STATE", "Kano"),
    )
    alerts = AlertService(
        store, dispatcher,
        clock=clock,
        cache_seconds=config.get("ALERT_CACHE_SECONDS", 30),
        subscriber_days=config.get("ALERT_SUBSCRIBER_DAYS", 7),
    )
    dashboard = DashboardService(store, ingestion, confidence, escalation, alerts, clock=clock)
    rate_limiter = RateLimiterService(
        rate_limiter_backend or build_backend(config.get("REDIS_URL")),
        ussd_limit=config.get("USSD_RATE_LIMIT", 20),
        ussd_window_ms=config.get("USSD_RATE_WINDOW_MS", 3_600_000),
    )
    ussd = UssdService(
        store, ingestion, dispatcher, alerts,
        clock=clock,
        timeout_seconds=config.get("USSD_SESSION_TIMEOUT_SECONDS", 120),
        max_message_length=config.get("USSD_MAX_MESSAGE_LENGTH", 182),
        max_input_length=config.get("USSD_MAX_INPUT_LENGTH", 160),
        default_language=config.get("USSD_DEFAULT_LANGUAGE", "hausa"),
    )
    return Services(
        store=store,
        similarity=similarity,
        deduplication=deduplication,
        confidence=confidence,
        dispatcher=dispatcher,
        escalation=escalation,
        ingestion=ingestion,
        alerts=alerts,
        dashboard=dashboard,
        rate_limiter=rate_limiter,
        ussd=ussd,
    )


def init_services(app, **overrides) -> Services:
    services = build_services(app.config, **overrides)
    app.extensions[EXTENSION_KEY] = services
    return services


def get_services() -> Services:
    return current_app.extensions[EXTENSION_KEY]

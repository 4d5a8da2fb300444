"""
Confidence Scoring Service.

Composite 0-100 reliability estimate used for triage:

    source reliability  0.25   channel base, callback consent, reporter history
    temporal            0.20   local time-of-day band of the report
    spatial             0.20   GPS accuracy > cell tower > manual place > none
    content             0.20   description length band
    deduplication       0.15   corroboration by similar recent reports

Scores are computed at ingestion and recomputed in batch by the
``confidence_rescore`` job; they are not recalculated on every mutation.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Callable
from zoneinfo import ZoneInfo

from matasa.models.incident import TERMINAL_STATUSES
from matasa.utils.helpers import utcnow

logger = logging.getLogger(__name__)

WEIGHTS = {
    "source_reliability": 0.25,
    "temporal": 0.20,
    "spatial": 0.20,
    "content": 0.20,
    "deduplication": 0.15,
}

CHANNEL_BASE = {"ussd": 70, "web": 60, "mobile": 80, "api": 65}
UNKNOWN_CHANNEL_BASE = 50
CALLBACK_BONUS = 10
HISTORY_POINTS_PER_REPORT = 5
HISTORY_BONUS_CAP = 20
HISTORY_WINDOW_DAYS = 30

HIGH_CONFIDENCE = 80
MEDIUM_CONFIDENCE = 50


def _clamp(value: float, low: float = 0, high: float = 100) -> float:
    return max(low, min(high, value))


class ConfidenceScoringService:

    def __init__(self, store, *, clock: Callable = utcnow, local_timezone: str = "Africa/Lagos") -> None:
        self.store = store
        self.clock = clock
        self.tz = ZoneInfo(local_timezone)

    # ── Sub-scores ───────────────────────────────────────────────────────

    def source_reliability(self, incident) -> float:
        score = CHANNEL_BASE.get(incident.channel, UNKNOWN_CHANNEL_BASE)
        if incident.reporter_callback_consent:
            score += CALLBACK_BONUS

        if not incident.reporter_anonymous and incident.reporter_phone_number:
            since = self.clock() - timedelta(days=HISTORY_WINDOW_DAYS)
            prior = self.store.count_reports_by_phone(
                incident.reporter_phone_number, since, exclude_id=incident.id,
            )
            if prior >= 1:
                score += min(prior * HISTORY_POINTS_PER_REPORT, HISTORY_BONUS_CAP)

        return min(score, 100)

    def temporal(self, incident) -> float:
        reported = incident.reported_at or self.clock()
        hour = reported.astimezone(self.tz).hour
        if hour >= 20 or hour < 6:
            return 85
        if 6 <= hour < 9 or 17 <= hour < 20:
            return 75
        return 70

    def spatial(self, incident) -> float:
        if incident.has_gps:
            accuracy = incident.location_accuracy
            if accuracy is not None and accuracy <= 50:
                return 95
            if accuracy is not None and accuracy <= 200:
                return 85
            return 75
        if incident.location_cell_tower_id:
            return 60
        if incident.location_village or incident.location_lga:
            return 50
        return 30

    def content(self, incident) -> float:
        length = len((incident.description_text or "").strip())
        if length == 0:
            return 50
        if length < 20:
            return 60
        if length <= 200:
            return 85
        return 70

    def deduplication(self, incident) -> float:
        dedup = incident.confidence_deduplication_score
        if dedup is None:
            return 50
        if dedup >= 80:
            return 90
        if dedup >= 60:
            return 75
        if dedup >= 40:
            return 60
        return 50

    # ── Composite ────────────────────────────────────────────────────────

    def calculate_confidence_score(self, incident) -> dict:
        """Return {"score", "breakdown", "factors"} without touching the incident."""
        breakdown = {
            "source_reliability": self.source_reliability(incident),
            "temporal": self.temporal(incident),
            "spatial": self.spatial(incident),
            "content": self.content(incident),
            "deduplication": self.deduplication(incident),
        }
        total = sum(WEIGHTS[name] * value for name, value in breakdown.items())
        score = int(round(_clamp(total)))
        return {"score": score, "breakdown": breakdown, "factors": self._factors(breakdown)}

    @staticmethod
    def _factors(breakdown: dict) -> list[dict]:
        factors = []
        source = breakdown["source_reliability"]
        if source >= 75:
            factors.append({"factor": "Reliable source", "impact": "positive"})
        elif source < 50:
            factors.append({"factor": "Source unverified", "impact": "negative"})

        spatial = breakdown["spatial"]
        if spatial >= 80:
            factors.append({"factor": "Precise location", "impact": "positive"})
        elif spatial < 50:
            factors.append({"factor": "Location uncertain", "impact": "negative"})

        if breakdown["deduplication"] >= 80:
            factors.append({"factor": "Corroborated by others", "impact": "positive"})
        if breakdown["temporal"] >= 80:
            factors.append({"factor": "Timely report", "impact": "positive"})
        return factors

    def update_incident_score(self, incident) -> dict:
        """Write the computed score onto the incident (caller owns the commit)."""
        result = self.calculate_confidence_score(incident)
        incident.confidence_score = result["score"]
        incident.confidence_source_reliability = result["breakdown"]["source_reliability"]
        return result

    def batch_update_scores(self, hours_back: int = 24) -> dict:
        """Re-score open incidents from the trailing window.

        Idempotent: incidents whose score is unchanged are not rewritten.
        """
        since = self.clock() - timedelta(hours=hours_back)
        incidents = self.store.open_incidents_since(since, TERMINAL_STATUSES)
        summary = {"processed": 0, "updated": 0, "errors": 0}

        for incident in incidents:
            summary["processed"] += 1
            try:
                result = self.calculate_confidence_score(incident)
            except Exception:
                summary["errors"] += 1
                logger.exception("Rescoring failed for %s", incident.incident_id,
                                 extra={"incident_id": incident.incident_id})
                continue
            if incident.confidence_score != result["score"]:
                incident.confidence_score = result["score"]
                incident.confidence_source_reliability = result["breakdown"]["source_reliability"]
                summary["updated"] += 1

        self.store.commit()
        logger.info("Confidence rescore: %s", summary, extra={"event_type": "confidence_rescore"})
        return summary

    def get_confidence_stats(self, date_from=None, date_to=None) -> dict:
        incidents = self.store.incidents_between({"date_from": date_from, "date_to": date_to})
        distribution = {"high": 0, "medium": 0, "low": 0}
        total_score = 0.0
        for incident in incidents:
            score = incident.confidence_score or 0
            total_score += score
            if score >= HIGH_CONFIDENCE:
                distribution["high"] += 1
            elif score >= MEDIUM_CONFIDENCE:
                distribution["medium"] += 1
            else:
                distribution["low"] += 1

        count = len(incidents)
        return {
            "distribution": distribution,
            "average_score": round(total_score / count, 1) if count else 0,
            "total_incidents": count,
        }

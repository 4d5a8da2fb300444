"""
Deduplication Service.

find_duplicates:   rank recent same-type incidents by similarity (read-only)
merge_incidents:   administrative merge of secondaries into a primary
cluster_incidents: greedy, order-dependent grouping for admin display

The caller decides what to do with the top similarity (ingestion stores it
as the incident's deduplication sub-score).
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Callable

from matasa.models.incident import TERMINAL_STATUSES, validate_incident_transition
from matasa.services.similarity import SimilarityEngine
from matasa.utils.helpers import utcnow

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 60
DEFAULT_WINDOW_MINUTES = 60
DEFAULT_MAX_CANDIDATES = 100
DEFAULT_MAX_RESULTS = 5

EXCLUDED_CANDIDATE_STATUSES = ("resolved", "closed", "expired", "merged")

# Fields a secondary may contribute when the primary has none.
_MERGEABLE_FIELDS = (
    "description_text",
    "description_audio_url",
    "location_latitude",
    "location_longitude",
    "location_accuracy",
    "location_cell_tower_id",
    "location_cell_tower_lac",
    "location_state",
    "location_lga",
    "location_ward",
    "location_village",
    "location_manual",
)


class DeduplicationService:

    def __init__(
        self,
        store,
        similarity: SimilarityEngine | None = None,
        *,
        clock: Callable = utcnow,
        threshold: int = DEFAULT_THRESHOLD,
        window_minutes: int = DEFAULT_WINDOW_MINUTES,
        max_candidates: int = DEFAULT_MAX_CANDIDATES,
        max_results: int = DEFAULT_MAX_RESULTS,
    ) -> None:
        self.store = store
        self.similarity = similarity or SimilarityEngine()
        self.clock = clock
        self.threshold = threshold
        self.window_minutes = window_minutes
        self.max_candidates = max_candidates
        self.max_results = max_results

    def find_duplicates(self, incident) -> list[dict]:
        """Return up to ``max_results`` likely duplicates, best first.

        Each entry: {"incident_id", "similarity", "factors"}.
        """
        since = self.clock() - timedelta(minutes=self.window_minutes)
        candidates = self.store.recent_candidates(
            incident.incident_type,
            since,
            exclude_id=incident.id,
            excluded_statuses=EXCLUDED_CANDIDATE_STATUSES,
            limit=self.max_candidates,
        )

        matches = []
        for rank, candidate in enumerate(candidates):
            if candidate.incident_id == incident.incident_id:
                continue
            result = self.similarity.score(incident, candidate)
            if result.score >= self.threshold:
                matches.append((result.score, rank, candidate.incident_id, result.factors))

        # Candidates arrive newest first; rank keeps that order among ties.
        matches.sort(key=lambda m: (-m[0], m[1]))
        duplicates = [
            {"incident_id": incident_id, "similarity": score, "factors": factors}
            for score, _rank, incident_id, factors in matches[: self.max_results]
        ]

        if duplicates:
            logger.info(
                "Incident %s has %d likely duplicate(s), top=%s",
                incident.incident_id, len(duplicates), duplicates[0]["similarity"],
                extra={"incident_id": incident.incident_id, "event_type": "dedup"},
            )
        return duplicates

    def merge_incidents(self, primary_id: str, secondary_ids, *, commit: bool = True) -> dict:
        """Fold secondaries into the primary.

        Copies descriptive fields the primary lacks, marks each secondary
        ``merged`` and points it at the primary. The primary keeps its own
        status, classification and escalation state.

        Raises:
            NotFoundError: unknown primary.
        """
        primary = self.store.require_incident(primary_id)
        merged, skipped = [], []

        for secondary_id in secondary_ids or []:
            if secondary_id == primary_id:
                skipped.append({"incident_id": secondary_id, "reason": "same as primary"})
                continue
            secondary = self.store.get_incident(secondary_id)
            if secondary is None:
                logger.warning("Merge skipped: incident %s not found", secondary_id)
                skipped.append({"incident_id": secondary_id, "reason": "not found"})
                continue
            if secondary.status in TERMINAL_STATUSES or not validate_incident_transition(
                secondary.status, "merged"
            ):
                skipped.append({"incident_id": secondary_id, "reason": f"status {secondary.status}"})
                continue

            for field in _MERGEABLE_FIELDS:
                if getattr(primary, field) in (None, "") and getattr(secondary, field) not in (None, ""):
                    setattr(primary, field, getattr(secondary, field))

            photos = list(primary.description_photo_urls or [])
            for url in secondary.description_photo_urls or []:
                if url not in photos:
                    photos.append(url)
            primary.description_photo_urls = photos

            secondary.status = "merged"
            secondary.merged_into = primary.incident_id
            merged.append(secondary_id)

        if commit:
            self.store.commit()

        logger.info(
            "Merged %d incident(s) into %s", len(merged), primary_id,
            extra={"incident_id": primary_id, "event_type": "merge"},
        )
        return {"primary": primary, "merged": merged, "skipped": skipped}

    def cluster_incidents(self, window_minutes: int | None = None) -> list[dict]:
        """Greedy single pass over recent ``received`` incidents, newest first."""
        window = window_minutes or self.window_minutes
        since = self.clock() - timedelta(minutes=window)
        incidents = self.store.incidents_with_status_since("received", since)

        visited: set[str] = set()
        clusters = []
        for incident in incidents:
            if incident.incident_id in visited:
                continue
            visited.add(incident.incident_id)

            members = []
            for other in incidents:
                if other.incident_id in visited or other.incident_type != incident.incident_type:
                    continue
                score = self.similarity.similarity(incident, other)
                if score >= self.threshold:
                    visited.add(other.incident_id)
                    members.append({"incident_id": other.incident_id, "similarity": score})

            clusters.append({
                "primary": incident.incident_id,
                "incident_type": incident.incident_type,
                "duplicates": members,
                "size": len(members) + 1,
            })
        return clusters

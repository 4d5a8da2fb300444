"""
Pairwise incident similarity.

Four independently bounded sub-scores, each already expressed in points
(raw maximum = weight x 100):

    spatial   max 40  GPS distance bands, else village / LGA / state match
    temporal  max 30  report-time difference bands (never below 5)
    type      max 20  exact match, else directional adjacency table
    severity  max 10  ordinal difference 0 / 1

score = round(100 * sum(weight * raw / max)) == round(sum(raw))

The adjacency table is directional: ``fire`` lists ``explosion`` but
``explosion`` lists nothing, so similarity(a, b) may differ from
similarity(b, a) by the type sub-score only.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from matasa.utils.geo import haversine_distance

SPATIAL_WEIGHT = 0.40
TEMPORAL_WEIGHT = 0.30
TYPE_WEIGHT = 0.20
SEVERITY_WEIGHT = 0.10

SPATIAL_MAX = 40
TEMPORAL_MAX = 30
TYPE_MAX = 20
SEVERITY_MAX = 10

# (upper bound in metres, points)
DISTANCE_BANDS = ((100, 40), (250, 30), (500, 20), (1000, 10))

# (upper bound in minutes, points); anything older scores TEMPORAL_FLOOR
TIME_BANDS = ((5, 30), (15, 25), (30, 20), (60, 15), (120, 10))
TEMPORAL_FLOOR = 5

RELATED_TYPES = {
    "suspicious_activity": ("theft", "fight", "gunshot"),
    "incident_in_progress": ("fire", "explosion", "violence"),
    "fire": ("explosion",),
    "theft": ("suspicious_activity",),
    "fight": ("violence", "suspicious_activity"),
    "gunshot": ("suspicious_activity", "violence"),
}

SEVERITY_ORDINAL = {"low": 1, "medium": 2, "high": 3, "critical": 4}
_DEFAULT_SEVERITY_ORDINAL = 2


@dataclass
class SimilarityResult:
    score: int
    factors: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"score": self.score, "factors": self.factors}


class SimilarityEngine:
    """Deterministic similarity scorer. Stateless; safe to share."""

    def spatial_score(self, a, b) -> int:
        if a.has_gps and b.has_gps:
            distance = haversine_distance(
                a.location_latitude, a.location_longitude,
                b.location_latitude, b.location_longitude,
            )
            for limit, points in DISTANCE_BANDS:
                if distance <= limit:
                    return points
            return 0

        if a.location_village and a.location_village == b.location_village:
            return 30
        if a.location_lga and a.location_lga == b.location_lga:
            return 20
        if a.location_state and a.location_state == b.location_state:
            return 10
        return 0

    def temporal_score(self, a, b) -> int:
        t1, t2 = a.reported_at, b.reported_at
        if t1 is None or t2 is None:
            return TEMPORAL_FLOOR
        minutes = abs((t1 - t2).total_seconds()) / 60
        for limit, points in TIME_BANDS:
            if minutes <= limit:
                return points
        return TEMPORAL_FLOOR

    def type_score(self, a, b) -> int:
        if a.incident_type == b.incident_type:
            return TYPE_MAX
        if b.incident_type in RELATED_TYPES.get(a.incident_type, ()):
            return 10
        return 0

    def severity_score(self, a, b) -> int:
        s1 = SEVERITY_ORDINAL.get(a.severity, _DEFAULT_SEVERITY_ORDINAL)
        s2 = SEVERITY_ORDINAL.get(b.severity, _DEFAULT_SEVERITY_ORDINAL)
        diff = abs(s1 - s2)
        if diff == 0:
            return SEVERITY_MAX
        if diff == 1:
            return 5
        return 0

    def score(self, a, b) -> SimilarityResult:
        parts = (
            ("spatial", SPATIAL_WEIGHT, self.spatial_score(a, b), SPATIAL_MAX),
            ("temporal", TEMPORAL_WEIGHT, self.temporal_score(a, b), TEMPORAL_MAX),
            ("type", TYPE_WEIGHT, self.type_score(a, b), TYPE_MAX),
            ("severity", SEVERITY_WEIGHT, self.severity_score(a, b), SEVERITY_MAX),
        )
        factors = []
        weighted = 0.0
        for name, weight, raw, maximum in parts:
            value = raw / maximum
            weighted += weight * value
            factors.append({
                "factor": name,
                "weight": weight,
                "raw": raw,
                "max": maximum,
                "value": round(value, 4),
            })
        return SimilarityResult(score=int(round(100 * weighted)), factors=factors)

    def similarity(self, a, b) -> int:
        return self.score(a, b).score

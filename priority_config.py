"""
Priority model configuration for the Janawaaz complaint classifier.

Owns every policy constant that affects how a complaint is prioritised:
the ordered critical-place keywords and search radius, the traffic probe
geometry and anomaly threshold, and the fixed labels that appear in the
citizen-facing message.

Frozen dataclasses provide type checking and IDE support without
the indirection of YAML/JSON config files.  A handful of knobs can be
overridden from the environment (see load_priority_model).
"""

import math
import os
from dataclasses import dataclass, field, replace
from typing import Mapping, Optional, Tuple


# =============================================================================
# Dataclasses
# =============================================================================

@dataclass(frozen=True)
class CriticalPlacePolicy:
    """Ordered keyword list for the critical-infrastructure search.

    Order is the tie-break: the first keyword with a nearby hit wins,
    even when a later keyword would also match.
    """
    terms: Tuple[str, ...] = (
        "hospital",
        "school",
        "police station",
        "bus station",
        "airport",
        "temple",
        "tourist attraction",
        "landmark",
    )
    # Nearby-search radius in meters.  5 m means "at this exact point";
    # kept as observed in production pending product review (see DESIGN.md).
    radius_m: int = 5


@dataclass(frozen=True)
class TrafficPolicy:
    """Probe-route geometry and congestion threshold."""
    # Synthetic destination offset applied to both lat and lng (~500 m).
    probe_offset_deg: float = 0.005
    # (with_traffic - baseline) / baseline must be strictly greater.
    anomaly_threshold: float = 0.25
    mode: str = "driving"
    traffic_model: str = "best_guess"


@dataclass(frozen=True)
class ClassificationLabels:
    """Fixed strings that flow into PriorityResult and the message."""
    low_priority_issue_type: str = "colony-work"
    low_priority_reason: str = "Minor residential issue"
    default_reason: str = "General complaint"
    critical_place_reason: str = "a key public service ({term})"
    traffic_reason: str = "high traffic"
    traffic_place_name: str = "the surrounding roads"
    default_area_name: str = "the surrounding area"
    message_prefix: str = "Complaint received."


@dataclass(frozen=True)
class PriorityModel:
    """Top-level priority configuration.  Versioned for trace metadata."""
    version: str = "1.0.0"
    critical_places: CriticalPlacePolicy = field(default_factory=CriticalPlacePolicy)
    traffic: TrafficPolicy = field(default_factory=TrafficPolicy)
    labels: ClassificationLabels = field(default_factory=ClassificationLabels)


# =============================================================================
# Environment overrides
# =============================================================================

def _env_number(env: Mapping[str, str], name: str, cast, minimum: float,
                inclusive: bool) -> Optional[float]:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return None
    try:
        value = cast(raw.strip())
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None
    if not math.isfinite(value):
        raise ValueError(f"{name} must be finite, got {raw!r}")
    if value < minimum or (value == minimum and not inclusive):
        bound = ">=" if inclusive else ">"
        raise ValueError(f"{name} must be {bound} {minimum}, got {value}")
    return value


def _parse_terms(raw: str) -> Tuple[str, ...]:
    """Split a comma-separated keyword list, keeping first-seen order."""
    terms = []
    for part in raw.split(","):
        term = part.strip().lower()
        if term and term not in terms:
            terms.append(term)
    return tuple(terms)


def load_priority_model(env: Optional[Mapping[str, str]] = None) -> PriorityModel:
    """Build the PriorityModel, applying any environment overrides.

    Recognised variables:
      CRITICAL_PLACE_RADIUS_M     integer > 0
      CRITICAL_PLACE_TERMS        comma-separated keywords, in priority order
      TRAFFIC_ANOMALY_THRESHOLD   float >= 0
      TRAFFIC_PROBE_OFFSET_DEG    float > 0

    Raises ValueError (never assert, so python -O keeps the check) when an
    override is malformed.
    """
    if env is None:
        env = os.environ
    model = PriorityModel()

    places = model.critical_places
    radius = _env_number(env, "CRITICAL_PLACE_RADIUS_M", int, 0, inclusive=False)
    if radius is not None:
        places = replace(places, radius_m=int(radius))
    raw_terms = env.get("CRITICAL_PLACE_TERMS")
    if raw_terms is not None and raw_terms.strip():
        terms = _parse_terms(raw_terms)
        if not terms:
            raise ValueError("CRITICAL_PLACE_TERMS must name at least one keyword")
        places = replace(places, terms=terms)

    traffic = model.traffic
    threshold = _env_number(env, "TRAFFIC_ANOMALY_THRESHOLD", float, 0.0, inclusive=True)
    if threshold is not None:
        traffic = replace(traffic, anomaly_threshold=threshold)
    offset = _env_number(env, "TRAFFIC_PROBE_OFFSET_DEG", float, 0.0, inclusive=False)
    if offset is not None:
        traffic = replace(traffic, probe_offset_deg=offset)

    return replace(model, critical_places=places, traffic=traffic)


PRIORITY_MODEL = load_priority_model()

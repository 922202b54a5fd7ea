#!/usr/bin/env python3
"""
Complaint Priority Evaluator

Decides whether a citizen complaint is High, Medium or Low priority from
where it was reported:

  1. Critical places: is the complaint at a hospital, school, police
     station or other key public service?  (Places Nearby Search)
  2. Traffic: is the surrounding road network congested right now?
     (Directions, with and without live traffic)
  3. Area name: which locality is it in, for the citizen-facing message?
     (Reverse Geocoding)

Each lookup fails open: an upstream error or unusable response degrades
to "no signal" and classification always completes.

Requirements:
- Google Maps API key (Places, Directions and Geocoding web services)

Usage:
    python priority_evaluator.py 18.5204 73.8567 pothole
    python priority_evaluator.py 18.5204 73.8567 colony-work --json
"""

import argparse
import json
import logging
import math
import os
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import requests
from dotenv import load_dotenv

from health_monitor import record_call
from jw_trace import get_trace, set_trace
from priority_config import (
    PRIORITY_MODEL,
    ClassificationLabels,
    CriticalPlacePolicy,
    PriorityModel,
    TrafficPolicy,
)

logger = logging.getLogger(__name__)

load_dotenv()

# =============================================================================
# CONFIGURATION
# =============================================================================

PRIORITY_HIGH = "High"
PRIORITY_MEDIUM = "Medium"
PRIORITY_LOW = "Low"

# Everything a single Maps lookup can raise that should count as "no signal"
# rather than fail the request: transport errors and timeouts, non-2xx
# responses, provider error statuses and malformed bodies.
UPSTREAM_ERRORS = (requests.RequestException, ValueError, KeyError, IndexError, TypeError)


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass(frozen=True)
class Coordinates:
    """A (latitude, longitude) pair in decimal degrees."""
    latitude: float
    longitude: float

    def __post_init__(self):
        for name, value, bound in (
            ("latitude", self.latitude, 90.0),
            ("longitude", self.longitude, 180.0),
        ):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"{name} must be a number, got {value!r}")
            if not math.isfinite(value) or not -bound <= value <= bound:
                raise ValueError(f"{name} must be between -{bound:g} and {bound:g}, got {value}")

    def as_param(self) -> str:
        return f"{self.latitude},{self.longitude}"

    def offset(self, delta_deg: float) -> "Coordinates":
        """Shift both axes by delta_deg, clamped to the valid range."""
        return Coordinates(
            latitude=max(-90.0, min(90.0, self.latitude + delta_deg)),
            longitude=max(-180.0, min(180.0, self.longitude + delta_deg)),
        )


@dataclass(frozen=True)
class ComplaintPriorityRequest:
    coordinates: Coordinates
    issue_type: str


@dataclass(frozen=True)
class CriticalPlaceMatch:
    """The first critical-place keyword with a hit, and the top place's name."""
    matched_term: str
    place_name: str


@dataclass(frozen=True)
class TrafficSignal:
    """Outcome of the live-traffic probe.

    Only is_anomalous drives classification.  ratio and available are kept
    for debugging: available is False when the signal is the fallback
    default after an upstream failure or malformed response.
    """
    is_anomalous: bool
    ratio: Optional[float] = None
    available: bool = False


NO_TRAFFIC_SIGNAL = TrafficSignal(is_anomalous=False)


@dataclass(frozen=True)
class PriorityResult:
    priority: str
    reason: str
    high_priority_reason: Optional[str]
    high_priority_place_name: Optional[str]
    area_name: str
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "priority": self.priority,
            "reason": self.reason,
            "highPriorityReason": self.high_priority_reason,
            "highPriorityPlaceName": self.high_priority_place_name,
            "areaName": self.area_name,
            "message": self.message,
        }


@dataclass(frozen=True)
class PrioritySignals:
    """Raw detector outputs behind a PriorityResult (for debugging)."""
    short_circuited: bool
    critical_place: Optional[CriticalPlaceMatch] = None
    traffic: Optional[TrafficSignal] = None

    def to_dict(self) -> Dict[str, Any]:
        place = self.critical_place
        traffic = self.traffic
        return {
            "short_circuited": self.short_circuited,
            "critical_place": (
                {"matched_term": place.matched_term, "place_name": place.place_name}
                if place else None
            ),
            "traffic": (
                {
                    "is_anomalous": traffic.is_anomalous,
                    "ratio": traffic.ratio,
                    "available": traffic.available,
                }
                if traffic else None
            ),
        }


# =============================================================================
# API CLIENT
# =============================================================================

class GoogleMapsClient:
    """Client for the Google Maps web services used by classification."""

    # Per-call timeout in seconds.  A timeout is handled like any other
    # upstream failure, so this bounds the worst-case request latency.
    DEFAULT_TIMEOUT = float(os.environ.get("MAPS_REQUEST_TIMEOUT", "10"))

    OK_STATUSES = ("OK", "ZERO_RESULTS")

    def __init__(self, api_key: str, timeout: Optional[float] = None):
        self.api_key = api_key
        self.base_url = "https://maps.googleapis.com/maps/api"
        self.timeout = timeout or self.DEFAULT_TIMEOUT
        # requests.Session is not thread-safe; the traffic probe calls this
        # client from two worker threads, so each thread gets its own.
        self._local = threading.local()

    @property
    def session(self) -> requests.Session:
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            session.trust_env = False
            self._local.session = session
        return session

    def _traced_get(self, endpoint_name: str, url: str, params: dict) -> dict:
        """GET request with trace and health recording.

        Raises requests.RequestException on transport failure or a non-2xx
        response, ValueError when the body is not a JSON object.
        """
        trace = get_trace()
        t0 = time.time()
        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
        except requests.RequestException as exc:
            elapsed_ms = int((time.time() - t0) * 1000)
            if trace:
                trace.record_api_call(
                    service="google_maps",
                    endpoint=endpoint_name,
                    elapsed_ms=elapsed_ms,
                    status_code=0,
                    error=type(exc).__name__,
                )
            record_call(endpoint_name, False, elapsed_ms, type(exc).__name__)
            raise
        elapsed_ms = int((time.time() - t0) * 1000)

        data = None
        provider_status = ""
        if response.ok:
            try:
                data = response.json()
            except ValueError:
                provider_status = "INVALID_JSON"
            else:
                if isinstance(data, dict):
                    provider_status = str(data.get("status", ""))
                else:
                    provider_status = "INVALID_JSON"

        if trace:
            trace.record_api_call(
                service="google_maps",
                endpoint=endpoint_name,
                elapsed_ms=elapsed_ms,
                status_code=response.status_code,
                provider_status=provider_status,
            )
        success = response.ok and provider_status in self.OK_STATUSES
        record_call(
            endpoint_name, success, elapsed_ms,
            None if success else (provider_status or f"HTTP {response.status_code}"),
        )

        response.raise_for_status()
        if not isinstance(data, dict):
            raise ValueError(f"{endpoint_name}: response body is not a JSON object")
        return data

    def places_nearby(
        self,
        location: Coordinates,
        keyword: str,
        radius_meters: int,
    ) -> List[Dict]:
        """Search for places matching keyword within radius_meters."""
        url = f"{self.base_url}/place/nearbysearch/json"
        params = {
            "location": location.as_param(),
            "radius": radius_meters,
            "keyword": keyword,
            "key": self.api_key,
        }
        data = self._traced_get("places_nearby", url, params)

        if data.get("status") not in self.OK_STATUSES:
            raise ValueError(f"Places API failed: {data.get('status')}")

        return data.get("results", [])

    def directions(
        self,
        origin: Coordinates,
        destination: Coordinates,
        mode: str = "driving",
        departure_time: Optional[str] = None,
        traffic_model: Optional[str] = None,
    ) -> List[Dict]:
        """Get routes between two points.

        Pass departure_time="now" (and a traffic_model) to have Google
        include legs[].duration_in_traffic.
        """
        url = f"{self.base_url}/directions/json"
        params = {
            "origin": origin.as_param(),
            "destination": destination.as_param(),
            "mode": mode,
            "key": self.api_key,
        }
        if departure_time:
            params["departure_time"] = departure_time
        if traffic_model:
            params["traffic_model"] = traffic_model

        data = self._traced_get("directions", url, params)

        if data.get("status") not in self.OK_STATUSES:
            raise ValueError(f"Directions API failed: {data.get('status')}")

        return data.get("routes", [])

    def reverse_geocode(self, location: Coordinates) -> List[Dict]:
        """Convert coordinates to address results (most specific first)."""
        url = f"{self.base_url}/geocode/json"
        params = {"latlng": location.as_param(), "key": self.api_key}
        data = self._traced_get("reverse_geocode", url, params)

        if data.get("status") not in self.OK_STATUSES:
            raise ValueError(f"Reverse geocoding failed: {data.get('status')}")

        return data.get("results", [])


# =============================================================================
# DETECTORS
# =============================================================================

class CriticalPlaceDetector:
    """Finds the highest-ranked critical place at the complaint location.

    Keywords are searched one at a time in policy order and the search
    stops at the first keyword with a result, so a school match hides a
    hospital further down the list.
    """

    def __init__(self, maps: GoogleMapsClient, policy: Optional[CriticalPlacePolicy] = None):
        self.maps = maps
        self.policy = policy or PRIORITY_MODEL.critical_places

    def detect(self, coordinates: Coordinates) -> Optional[CriticalPlaceMatch]:
        for term in self.policy.terms:
            try:
                places = self.maps.places_nearby(
                    coordinates, keyword=term, radius_meters=self.policy.radius_m,
                )
            except UPSTREAM_ERRORS as exc:
                logger.warning(
                    "Critical place search for %r failed, treating as no match: %s",
                    term, exc,
                )
                continue

            if not isinstance(places, list) or not places:
                continue

            top = places[0]
            name = top.get("name") if isinstance(top, dict) else None
            if not isinstance(name, str) or not name.strip():
                name = term
            logger.info("Critical place %r found near %s: %s", term, coordinates.as_param(), name)
            return CriticalPlaceMatch(matched_term=term, place_name=name)

        return None


def _leg_duration(routes: Any, key: str) -> Optional[float]:
    """Pull routes[0].legs[0][key].value in seconds, or None if unusable."""
    try:
        value = routes[0]["legs"][0][key]["value"]
    except (IndexError, KeyError, TypeError):
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return float(value)


class TrafficAnomalyDetector:
    """Flags heavy local congestion by comparing live and baseline drive times.

    The probe route runs from the complaint to a point offset by
    probe_offset_deg on both axes.  That is a coarse, fixed-bearing proxy
    for local congestion, not a measurement of the complaint's own road.
    """

    def __init__(self, maps: GoogleMapsClient, policy: Optional[TrafficPolicy] = None):
        self.maps = maps
        self.policy = policy or PRIORITY_MODEL.traffic

    def probe_destination(self, origin: Coordinates) -> Coordinates:
        return origin.offset(self.policy.probe_offset_deg)

    def detect(self, coordinates: Coordinates) -> TrafficSignal:
        destination = self.probe_destination(coordinates)
        parent_trace = get_trace()

        def _in_thread(**kwargs):
            set_trace(parent_trace)
            return self.maps.directions(coordinates, destination, mode=self.policy.mode, **kwargs)

        # Both queries must succeed; one duration alone is never trusted.
        try:
            with ThreadPoolExecutor(max_workers=2) as pool:
                live = pool.submit(
                    _in_thread,
                    departure_time="now",
                    traffic_model=self.policy.traffic_model,
                )
                baseline = pool.submit(_in_thread)
                live_routes = live.result()
                baseline_routes = baseline.result()
        except UPSTREAM_ERRORS as exc:
            logger.warning("Traffic probe failed, assuming normal traffic: %s", exc)
            return NO_TRAFFIC_SIGNAL

        with_traffic = _leg_duration(live_routes, "duration_in_traffic")
        without_traffic = _leg_duration(baseline_routes, "duration")
        if with_traffic is None or without_traffic is None or without_traffic <= 0:
            logger.warning(
                "Traffic probe returned unusable durations (traffic=%s, baseline=%s), "
                "assuming normal traffic",
                with_traffic, without_traffic,
            )
            return NO_TRAFFIC_SIGNAL

        ratio = (with_traffic - without_traffic) / without_traffic
        anomalous = ratio > self.policy.anomaly_threshold
        logger.info(
            "Traffic probe near %s: %.0fs live vs %.0fs baseline, ratio=%.3f anomalous=%s",
            coordinates.as_param(), with_traffic, without_traffic, ratio, anomalous,
        )
        return TrafficSignal(is_anomalous=anomalous, ratio=ratio, available=True)


def _find_locality(results: Any) -> Optional[str]:
    if not isinstance(results, list) or not results or not isinstance(results[0], dict):
        return None
    for component in results[0].get("address_components") or []:
        if not isinstance(component, dict):
            continue
        if "locality" in (component.get("types") or []):
            name = component.get("long_name")
            if isinstance(name, str) and name.strip():
                return name
    return None


class AreaNameResolver:
    """Reverse-geocodes coordinates to a locality name for the message."""

    def __init__(self, maps: GoogleMapsClient, default: Optional[str] = None):
        self.maps = maps
        self.default = default or PRIORITY_MODEL.labels.default_area_name

    def resolve(self, coordinates: Coordinates) -> str:
        try:
            results = self.maps.reverse_geocode(coordinates)
        except UPSTREAM_ERRORS as exc:
            logger.warning("Reverse geocoding failed, using default area name: %s", exc)
            return self.default
        return _find_locality(results) or self.default


# =============================================================================
# CLASSIFICATION
# =============================================================================

def _timed_stage(stage_name, fn, *args, **kwargs):
    """Run *fn* with timing.  Logs duration and re-raises on failure."""
    trace = get_trace()
    if trace:
        trace.start_stage(stage_name)
    t0 = time.time()
    try:
        result = fn(*args, **kwargs)
        t1 = time.time()
        if trace:
            trace.record_stage(stage_name, t0, t1)
        else:
            logger.info("  [stage] %s OK (%.1fs)", stage_name, t1 - t0)
        return result
    except Exception as exc:
        t1 = time.time()
        if trace:
            trace.record_stage(
                stage_name, t0, t1,
                error_class=type(exc).__name__,
                error_message=str(exc)[:200],
            )
        else:
            logger.warning("  [stage] %s FAILED (%.1fs)", stage_name, t1 - t0, exc_info=True)
        raise
    finally:
        if trace:
            trace.end_stage()


def build_message(
    priority: str,
    reason: str,
    area_name: str,
    high_priority_reason: Optional[str] = None,
    high_priority_place_name: Optional[str] = None,
    near_place: bool = False,
    prefix: str = PRIORITY_MODEL.labels.message_prefix,
) -> str:
    if priority == PRIORITY_HIGH and near_place:
        return (
            f"{prefix} Priority set to: High. Reason: The issue is located near "
            f"{high_priority_reason}. The identified place is {high_priority_place_name}."
        )
    if priority == PRIORITY_HIGH:
        return (
            f"{prefix} Priority set to: High. Reason: The area is experiencing "
            f"{high_priority_reason}."
        )
    return f"{prefix} Priority set to: {priority}. Reason: {reason} in {area_name}."


class PriorityClassifier:
    """Combines the three detectors into a single PriorityResult.

    Order is fixed: low-priority override, critical places, traffic (only
    without a critical place), then area name.  The detectors never raise
    for upstream problems, so classify() always returns a result.
    """

    def __init__(
        self,
        critical_places: CriticalPlaceDetector,
        traffic: TrafficAnomalyDetector,
        area_names: AreaNameResolver,
        labels: Optional[ClassificationLabels] = None,
    ):
        self.critical_places = critical_places
        self.traffic = traffic
        self.area_names = area_names
        self.labels = labels or PRIORITY_MODEL.labels

    @classmethod
    def for_client(cls, maps: GoogleMapsClient, model: PriorityModel = PRIORITY_MODEL):
        return cls(
            CriticalPlaceDetector(maps, model.critical_places),
            TrafficAnomalyDetector(maps, model.traffic),
            AreaNameResolver(maps, model.labels.default_area_name),
            labels=model.labels,
        )

    def classify(self, request: ComplaintPriorityRequest) -> PriorityResult:
        result, _ = self.explain(request)
        return result

    def explain(self, request: ComplaintPriorityRequest) -> Tuple[PriorityResult, PrioritySignals]:
        """Classify and also return the raw signals that decided it."""
        labels = self.labels
        coords = request.coordinates
        trace = get_trace()

        high_priority_reason = None
        high_priority_place_name = None
        match = None
        traffic = None

        if request.issue_type == labels.low_priority_issue_type:
            priority = PRIORITY_LOW
            reason = labels.low_priority_reason
            short_circuited = True
            if trace:
                trace.record_skipped("critical_places")
                trace.record_skipped("traffic")
        else:
            priority = PRIORITY_MEDIUM
            reason = labels.default_reason
            short_circuited = False

            match = _timed_stage("critical_places", self.critical_places.detect, coords)
            if match is not None:
                priority = PRIORITY_HIGH
                high_priority_reason = labels.critical_place_reason.format(term=match.matched_term)
                high_priority_place_name = match.place_name
                if trace:
                    trace.record_skipped("traffic")
            else:
                traffic = _timed_stage("traffic", self.traffic.detect, coords)
                if traffic.is_anomalous:
                    priority = PRIORITY_HIGH
                    high_priority_reason = labels.traffic_reason
                    high_priority_place_name = labels.traffic_place_name

        area_name = _timed_stage("area_name", self.area_names.resolve, coords)

        message = build_message(
            priority,
            reason,
            area_name,
            high_priority_reason=high_priority_reason,
            high_priority_place_name=high_priority_place_name,
            near_place=match is not None,
            prefix=labels.message_prefix,
        )
        logger.info(
            "Complaint %r at %s classified %s (%s)",
            request.issue_type, coords.as_param(), priority,
            high_priority_reason or reason,
        )
        result = PriorityResult(
            priority=priority,
            reason=reason,
            high_priority_reason=high_priority_reason,
            high_priority_place_name=high_priority_place_name,
            area_name=area_name,
            message=message,
        )
        signals = PrioritySignals(
            short_circuited=short_circuited,
            critical_place=match,
            traffic=traffic,
        )
        return result, signals


def classify_complaint(
    latitude: float,
    longitude: float,
    issue_type: str,
    api_key: str,
) -> PriorityResult:
    """Classify one complaint with a fresh Maps client."""
    trace = get_trace()
    if trace:
        trace.model_version = PRIORITY_MODEL.version
    request = ComplaintPriorityRequest(
        coordinates=Coordinates(latitude, longitude),
        issue_type=issue_type,
    )
    return PriorityClassifier.for_client(GoogleMapsClient(api_key)).classify(request)


def format_result(request: ComplaintPriorityRequest, result: PriorityResult) -> str:
    """Format a classification as a readable report."""
    lines = []
    lines.append("=" * 70)
    lines.append(f"ISSUE: {request.issue_type}")
    lines.append(
        f"COORDINATES: {request.coordinates.latitude:.6f}, "
        f"{request.coordinates.longitude:.6f}"
    )
    lines.append(f"AREA: {result.area_name}")
    lines.append("=" * 70)
    lines.append(f"\nPRIORITY: {result.priority}")
    if result.high_priority_reason:
        lines.append(f"  Escalated by: {result.high_priority_reason}")
        lines.append(f"  Place: {result.high_priority_place_name}")
    else:
        lines.append(f"  Reason: {result.reason}")
    lines.append(f"\n{result.message}")
    return "\n".join(lines)


# =============================================================================
# CLI
# =============================================================================

def main():
    parser = argparse.ArgumentParser(
        description="Classify a complaint's priority from its location"
    )
    parser.add_argument("latitude", type=float, help="Complaint latitude")
    parser.add_argument("longitude", type=float, help="Complaint longitude")
    parser.add_argument("issue_type", help='Issue type, e.g. "pothole" or "colony-work"')
    parser.add_argument(
        "--api-key",
        default=os.environ.get("GOOGLE_MAPS_API_KEY"),
        help="Google Maps API key (or set GOOGLE_MAPS_API_KEY env var)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON instead of formatted text",
    )
    args = parser.parse_args()

    if not args.api_key:
        print("Error: Google Maps API key required. Set GOOGLE_MAPS_API_KEY or use --api-key")
        sys.exit(1)

    logging.basicConfig(level=logging.INFO)

    try:
        result = classify_complaint(args.latitude, args.longitude, args.issue_type, args.api_key)
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(1)

    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
    else:
        request = ComplaintPriorityRequest(
            coordinates=Coordinates(args.latitude, args.longitude),
            issue_type=args.issue_type,
        )
        print(format_result(request, result))


if __name__ == "__main__":
    main()

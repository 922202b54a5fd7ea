"""Tests for GoogleMapsClient: request parameters, provider status handling,
and the trace/health bookkeeping in _traced_get.
"""

from unittest.mock import MagicMock, patch

import pytest
import requests

import health_monitor
from jw_trace import RequestTrace, set_trace
from priority_evaluator import Coordinates, GoogleMapsClient

ORIGIN = Coordinates(18.5204, 73.8567)
DEST = Coordinates(18.5254, 73.8617)


def _make_client():
    client = GoogleMapsClient.__new__(GoogleMapsClient)
    client.api_key = "fake-key"
    client.base_url = "https://maps.googleapis.com/maps/api"
    client.timeout = 10
    return client


def _response(status_code=200, body=None, json_error=False):
    resp = MagicMock()
    resp.status_code = status_code
    resp.ok = 200 <= status_code < 400
    resp.text = "" if body is None else str(body)
    if json_error:
        resp.json.side_effect = ValueError("Expecting value")
    else:
        resp.json.return_value = body
    if resp.ok:
        resp.raise_for_status.return_value = None
    else:
        resp.raise_for_status.side_effect = requests.HTTPError(
            f"{status_code} Server Error", response=resp,
        )
    return resp


def _client_with_session(response=None, error=None):
    client = GoogleMapsClient("fake-key", timeout=3)
    session = MagicMock()
    if error is not None:
        session.get.side_effect = error
    else:
        session.get.return_value = response
    client._local.session = session
    return client, session


class TestTracedGet:
    def test_returns_json_body(self):
        client, session = _client_with_session(_response(body={"status": "OK", "results": []}))
        data = client._traced_get("places_nearby", "https://x", {"a": 1})
        assert data == {"status": "OK", "results": []}
        session.get.assert_called_once_with("https://x", params={"a": 1}, timeout=3)

    def test_records_call_in_active_trace(self):
        trace = RequestTrace(trace_id="t-1")
        set_trace(trace)
        trace.start_stage("critical_places")
        client, _ = _client_with_session(_response(body={"status": "ZERO_RESULTS"}))
        client._traced_get("places_nearby", "https://x", {})

        assert len(trace.calls) == 1
        call = trace.calls[0]
        assert call.service == "google_maps"
        assert call.endpoint == "places_nearby"
        assert call.status_code == 200
        assert call.provider_status == "ZERO_RESULTS"
        assert call.stage == "critical_places"
        assert call.ok

    def test_records_health_outcome(self):
        client, _ = _client_with_session(_response(body={"status": "OK"}))
        client._traced_get("directions", "https://x", {})
        status = health_monitor.get_status()["directions"]
        assert status["sample_size"] == 1
        assert status["status"] == "healthy"

    def test_provider_error_status_recorded_as_failure(self):
        client, _ = _client_with_session(_response(body={"status": "OVER_QUERY_LIMIT"}))
        with patch("priority_evaluator.record_call") as mock_record:
            data = client._traced_get("directions", "https://x", {})
        assert data["status"] == "OVER_QUERY_LIMIT"
        args = mock_record.call_args[0]
        assert args[0] == "directions"
        assert args[1] is False
        assert args[3] == "OVER_QUERY_LIMIT"

    def test_http_error_raises_with_response(self):
        client, _ = _client_with_session(_response(status_code=503, body="unavailable"))
        with pytest.raises(requests.HTTPError) as exc_info:
            client._traced_get("reverse_geocode", "https://x", {})
        assert exc_info.value.response.status_code == 503

    def test_transport_error_is_traced_and_reraised(self):
        trace = RequestTrace(trace_id="t-2")
        set_trace(trace)
        client, _ = _client_with_session(error=requests.ConnectTimeout("timed out"))
        with pytest.raises(requests.ConnectTimeout):
            client._traced_get("places_nearby", "https://x", {})
        assert trace.calls[0].status_code == 0
        assert trace.calls[0].error == "ConnectTimeout"
        assert not trace.calls[0].ok

    def test_non_json_body_raises_value_error(self):
        client, _ = _client_with_session(_response(body=None, json_error=True))
        with pytest.raises(ValueError, match="not a JSON object"):
            client._traced_get("places_nearby", "https://x", {})

    def test_json_list_body_raises_value_error(self):
        client, _ = _client_with_session(_response(body=[1, 2, 3]))
        with pytest.raises(ValueError, match="not a JSON object"):
            client._traced_get("places_nearby", "https://x", {})


class TestSessionPerThread:
    def test_same_thread_reuses_session(self):
        client = GoogleMapsClient("fake")
        assert client.session is client.session

    def test_sessions_ignore_environment_proxies(self):
        client = GoogleMapsClient("fake")
        assert client.session.trust_env is False


class TestPlacesNearby:
    def test_sends_keyword_and_radius(self):
        client = _make_client()
        client._traced_get = MagicMock(return_value={"status": "OK", "results": [{"name": "City Hospital"}]})
        result = client.places_nearby(ORIGIN, keyword="hospital", radius_meters=5)

        assert result == [{"name": "City Hospital"}]
        name, url, params = client._traced_get.call_args[0]
        assert name == "places_nearby"
        assert url.endswith("/place/nearbysearch/json")
        assert params["location"] == "18.5204,73.8567"
        assert params["radius"] == 5
        assert params["keyword"] == "hospital"
        assert params["key"] == "fake-key"

    def test_zero_results_returns_empty(self):
        client = _make_client()
        client._traced_get = MagicMock(return_value={"status": "ZERO_RESULTS"})
        assert client.places_nearby(ORIGIN, keyword="school", radius_meters=5) == []

    def test_error_status_raises(self):
        client = _make_client()
        client._traced_get = MagicMock(return_value={"status": "REQUEST_DENIED"})
        with pytest.raises(ValueError, match="Places API failed"):
            client.places_nearby(ORIGIN, keyword="school", radius_meters=5)


class TestDirections:
    def test_baseline_query_has_no_traffic_params(self):
        client = _make_client()
        client._traced_get = MagicMock(return_value={"status": "OK", "routes": [{"legs": []}]})
        routes = client.directions(ORIGIN, DEST)

        assert routes == [{"legs": []}]
        _, url, params = client._traced_get.call_args[0]
        assert url.endswith("/directions/json")
        assert params["origin"] == "18.5204,73.8567"
        assert params["destination"] == "18.5254,73.8617"
        assert params["mode"] == "driving"
        assert "departure_time" not in params
        assert "traffic_model" not in params

    def test_live_traffic_query(self):
        client = _make_client()
        client._traced_get = MagicMock(return_value={"status": "OK", "routes": []})
        client.directions(ORIGIN, DEST, departure_time="now", traffic_model="best_guess")

        params = client._traced_get.call_args[0][2]
        assert params["departure_time"] == "now"
        assert params["traffic_model"] == "best_guess"

    def test_error_status_raises(self):
        client = _make_client()
        client._traced_get = MagicMock(return_value={"status": "OVER_QUERY_LIMIT"})
        with pytest.raises(ValueError, match="Directions API failed"):
            client.directions(ORIGIN, DEST)


class TestReverseGeocode:
    def test_sends_latlng(self):
        client = _make_client()
        results = [{"address_components": []}]
        client._traced_get = MagicMock(return_value={"status": "OK", "results": results})
        assert client.reverse_geocode(ORIGIN) == results
        params = client._traced_get.call_args[0][2]
        assert params == {"latlng": "18.5204,73.8567", "key": "fake-key"}

    def test_error_status_raises(self):
        client = _make_client()
        client._traced_get = MagicMock(return_value={"status": "INVALID_REQUEST"})
        with pytest.raises(ValueError, match="Reverse geocoding failed"):
            client.reverse_geocode(ORIGIN)

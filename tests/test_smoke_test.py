"""Tests for the post-deploy smoke test runner (HTTP is patched)."""

from unittest.mock import patch

import smoke_test

BASE = "http://svc"


def _fake_fetch(responses):
    def fetch(url, payload=None):
        return responses[url]
    return fetch


HEALTHY = {
    f"{BASE}/": (200, {"endpoints": {}, "model_version": "1.0.0"}),
    f"{BASE}/healthz": (200, {"status": "ok"}),
    f"{BASE}/api/report-issue": (400, {"error": "Missing required parameters."}),
}


def test_all_checks_pass():
    with patch("smoke_test.fetch", side_effect=_fake_fetch(HEALTHY)), \
            patch("smoke_test.send_webhook_alert") as alert:
        assert smoke_test.run_tests(BASE) is True
    alert.assert_not_called()


def test_validation_probe_sends_empty_body():
    with patch("smoke_test.fetch", side_effect=_fake_fetch(HEALTHY)) as mock_fetch:
        smoke_test.run_tests(BASE)
    mock_fetch.assert_any_call(f"{BASE}/api/report-issue", payload={})


def test_unhealthy_service_alerts():
    responses = dict(HEALTHY)
    responses[f"{BASE}/healthz"] = (503, {"missing_keys": ["GOOGLE_MAPS_API_KEY"]})
    with patch("smoke_test.fetch", side_effect=_fake_fetch(responses)), \
            patch("smoke_test.send_webhook_alert") as alert:
        assert smoke_test.run_tests(BASE) is False
    failures = alert.call_args[0][0]
    assert len(failures) == 1
    assert "healthz" in failures[0]


def test_unreachable_service_fails_every_check():
    with patch("smoke_test.fetch", return_value=(0, None)), \
            patch("smoke_test.send_webhook_alert") as alert:
        assert smoke_test.run_tests(BASE) is False
    assert len(alert.call_args[0][0]) == 3


def test_webhook_skipped_without_url(monkeypatch):
    monkeypatch.delenv("SMOKE_ALERT_WEBHOOK", raising=False)
    with patch("smoke_test.urllib.request.urlopen") as urlopen:
        smoke_test.send_webhook_alert(["Test 1 failed"])
    urlopen.assert_not_called()

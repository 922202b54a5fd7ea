import os
import logging
import uuid
from flask import Flask, request, jsonify, g, abort
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.middleware.proxy_fix import ProxyFix
from dotenv import load_dotenv
import requests

from jw_trace import RequestTrace, set_trace, clear_trace
from health_monitor import get_status as get_upstream_status
from priority_config import PRIORITY_MODEL
from priority_evaluator import (
    ComplaintPriorityRequest, Coordinates, GoogleMapsClient, PriorityClassifier,
)

load_dotenv()

# ---------------------------------------------------------------------------
# Sentry error tracking — gated on SENTRY_DSN; silent when unset (local dev)
# ---------------------------------------------------------------------------
_sentry_dsn = os.environ.get("SENTRY_DSN")
if _sentry_dsn:
    import sentry_sdk
    from sentry_sdk.integrations.flask import FlaskIntegration

    def _sentry_before_send(event, hint):
        """Demote expected upstream failures to breadcrumbs."""
        exc_info = hint.get("exc_info")
        if exc_info:
            exc_type, exc_value, _ = exc_info
            msg = str(exc_value) if exc_value else ""
            # Maps provider statuses (OVER_QUERY_LIMIT, REQUEST_DENIED, ...)
            if exc_type is ValueError and ("API failed" in msg or "geocoding failed" in msg):
                sentry_sdk.add_breadcrumb(category="google_maps", message=msg, level="warning")
                return None
            # Timeouts / connection failures talking to Maps
            if exc_type is not None and issubclass(exc_type, requests.exceptions.RequestException):
                sentry_sdk.add_breadcrumb(category="google_maps", message=msg, level="warning")
                return None
        return event

    sentry_sdk.init(
        dsn=_sentry_dsn,
        integrations=[FlaskIntegration()],
        traces_sample_rate=0.0,
        environment=os.environ.get("SENTRY_ENVIRONMENT", "production"),
        before_send=_sentry_before_send,
    )

app = Flask(__name__)

# Behind a reverse proxy, request.remote_addr must be the real client IP
# for both rate limiting and logs.
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Rate limiting — each classification costs up to 11 billed Maps calls.
# In-memory storage is per-process (with 2 gunicorn workers the effective
# limit is ~2x nominal).
# ---------------------------------------------------------------------------
RATE_LIMIT_DEFAULT = os.environ.get("RATE_LIMIT_DEFAULT", "60/minute")
RATE_LIMIT_CLASSIFY = os.environ.get("RATE_LIMIT_CLASSIFY", "30/minute")

limiter = Limiter(
    get_remote_address,
    app=app,
    default_limits=[RATE_LIMIT_DEFAULT],
    storage_uri="memory://",
)
logging.getLogger("flask-limiter").setLevel(logging.WARNING)


@limiter.request_filter
def _builder_bypass():
    """Exempt builder-mode requests from all rate limits."""
    return _is_builder(request)


if not os.environ.get("GOOGLE_MAPS_API_KEY"):
    logger.warning(
        "GOOGLE_MAPS_API_KEY is not set. "
        "Complaint classification will fail until it is configured. "
        "For local development, copy .env.example to .env and add your key."
    )

# ---------------------------------------------------------------------------
# Builder mode — unlocks /debug/classify and skips rate limits
# ---------------------------------------------------------------------------
BUILDER_MODE_ENV = os.environ.get("BUILDER_MODE", "").lower() == "true"
BUILDER_SECRET = os.environ.get("BUILDER_SECRET", "")


def _is_builder(req):
    """Builder mode is on via BUILDER_MODE=true or a matching X-Builder-Key header."""
    if BUILDER_MODE_ENV:
        return True
    if BUILDER_SECRET and req.headers.get("X-Builder-Key") == BUILDER_SECRET:
        return True
    return False


def _generate_request_id():
    return uuid.uuid4().hex[:10]


@app.before_request
def _set_request_context():
    g.request_id = _generate_request_id()
    g.is_builder = _is_builder(request)


@app.after_request
def _after_request(response):
    response.headers["X-Request-ID"] = getattr(g, "request_id", "")
    return response


# ---------------------------------------------------------------------------
# Request parsing
# ---------------------------------------------------------------------------

class ComplaintValidationError(ValueError):
    """The request body is missing a field or carries an unusable value."""


def _parse_coordinate(data: dict, name: str) -> float:
    value = data.get(name)
    if isinstance(value, bool):
        raise ComplaintValidationError(f"{name} must be a number.")
    try:
        if isinstance(value, (int, float)):
            return float(value)
        return float(str(value).strip())
    except (ValueError, OverflowError):
        raise ComplaintValidationError(f"{name} must be a number.") from None


def parse_complaint_payload(data: dict) -> ComplaintPriorityRequest:
    """Validate {latitude, longitude, issueType} into a request.

    Raises ComplaintValidationError with a short, citizen-safe message.
    """
    missing = [
        key for key in ("latitude", "longitude", "issueType")
        if data.get(key) is None or (isinstance(data.get(key), str) and not data[key].strip())
    ]
    if missing:
        raise ComplaintValidationError("Missing required parameters: " + ", ".join(missing) + ".")

    issue_type = data["issueType"]
    if not isinstance(issue_type, str):
        raise ComplaintValidationError("issueType must be a string.")

    lat = _parse_coordinate(data, "latitude")
    lng = _parse_coordinate(data, "longitude")
    try:
        coordinates = Coordinates(lat, lng)
    except ValueError as e:
        raise ComplaintValidationError(str(e) + ".") from None

    return ComplaintPriorityRequest(coordinates=coordinates, issue_type=issue_type.strip())


def _check_service_config():
    """
    Validate required service configuration.
    Returns (is_ok, missing_keys) tuple.
    """
    missing = []
    if not os.environ.get("GOOGLE_MAPS_API_KEY"):
        missing.append("GOOGLE_MAPS_API_KEY")
    return (len(missing) == 0, missing)


def _build_classifier() -> PriorityClassifier:
    return PriorityClassifier.for_client(GoogleMapsClient(os.environ["GOOGLE_MAPS_API_KEY"]))


def _read_payload():
    data = request.get_json(silent=True)
    if data is None:
        data = request.form.to_dict()
    return data


def _internal_error():
    return jsonify({
        "error": "Internal server error.",
        "request_id": getattr(g, "request_id", "unknown"),
    }), 500


def _log_classification_failure(request_id: str, exc: Exception):
    """Log the three 500 sub-cases distinctly; callers all see one payload."""
    if isinstance(exc, requests.HTTPError) and exc.response is not None:
        logger.error(
            "[%s] Google Maps API returned an error: HTTP %s %s",
            request_id, exc.response.status_code, (exc.response.text or "")[:500],
        )
    elif isinstance(exc, requests.RequestException):
        logger.error(
            "[%s] No response from Google Maps API: %s: %s",
            request_id, type(exc).__name__, exc,
        )
    else:
        logger.error("[%s] Internal error during classification", request_id, exc_info=exc)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@app.route("/", methods=["GET"])
def index():
    return jsonify({
        "message": "Janawaaz complaint priority service is running.",
        "model_version": PRIORITY_MODEL.version,
        "endpoints": {
            "report_issue": "POST /api/report-issue",
            "health": "GET /healthz",
        },
    })


@app.route("/api/report-issue", methods=["POST"])
@limiter.limit(RATE_LIMIT_CLASSIFY)
def report_issue():
    request_id = g.request_id
    data = _read_payload()
    if not isinstance(data, dict):
        return jsonify({"error": "Request body must be a JSON object.", "request_id": request_id}), 400

    try:
        complaint = parse_complaint_payload(data)
    except ComplaintValidationError as e:
        logger.info("[%s] POST /api/report-issue rejected: %s", request_id, e)
        return jsonify({"error": str(e), "request_id": request_id}), 400

    config_ok, missing_keys = _check_service_config()
    if not config_ok:
        logger.error("[%s] Missing required env vars: %s", request_id, missing_keys)
        return jsonify({
            "error": "Complaint classification is not configured.",
            "missing_keys": missing_keys,
            "request_id": request_id,
        }), 503

    coords = complaint.coordinates
    logger.info(
        "[%s] POST /api/report-issue issue=%r at %s",
        request_id, complaint.issue_type, coords.as_param(),
    )

    trace = RequestTrace(trace_id=request_id, model_version=PRIORITY_MODEL.version)
    set_trace(trace)
    try:
        result = _build_classifier().classify(complaint)
    except Exception as e:
        _log_classification_failure(request_id, e)
        return _internal_error()
    finally:
        trace.log_summary()
        clear_trace()

    logger.info("[%s] Complaint received. Priority set to: %s.", request_id, result.priority)
    return jsonify({
        "message": result.message,
        "priority": result.priority,
        "coordinates": {"latitude": coords.latitude, "longitude": coords.longitude},
        "issue": complaint.issue_type,
    })


@app.route("/healthz")
@limiter.exempt
def healthz():
    """Lightweight health-check endpoint for monitoring."""
    config_ok, missing = _check_service_config()
    return jsonify({
        "status": "ok" if config_ok else "degraded",
        "missing_keys": missing,
        "model_version": PRIORITY_MODEL.version,
        "services": get_upstream_status(),
    }), 200 if config_ok else 503


@app.route("/debug/classify", methods=["POST"])
@limiter.exempt
def debug_classify():
    """Run a classification and return signals plus the full trace. Builder-only.

    Accepts the same body as /api/report-issue.
    """
    if not g.is_builder:
        abort(404)

    data = _read_payload()
    if not isinstance(data, dict):
        return jsonify({"error": "Request body must be a JSON object."}), 400
    try:
        complaint = parse_complaint_payload(data)
    except ComplaintValidationError as e:
        return jsonify({"error": str(e)}), 400

    config_ok, missing_keys = _check_service_config()
    if not config_ok:
        return jsonify({"error": "missing config", "missing_keys": missing_keys}), 503

    trace_ctx = RequestTrace(trace_id=g.request_id, model_version=PRIORITY_MODEL.version)
    set_trace(trace_ctx)
    try:
        result, signals = _build_classifier().explain(complaint)
        trace_ctx.log_summary()
        return jsonify({
            "result": result.to_dict(),
            "signals": signals.to_dict(),
            "trace": trace_ctx.full_trace_dict(),
        })
    except Exception as e:
        trace_ctx.log_summary()
        return jsonify({
            "error": str(e),
            "trace": trace_ctx.full_trace_dict(),
        }), 500
    finally:
        clear_trace()


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------

@app.errorhandler(429)
def rate_limit_exceeded(e):
    return jsonify({"error": "Too many requests. Please wait and try again."}), 429


@app.errorhandler(404)
def not_found(e):
    return jsonify({"error": "Not found."}), 404


@app.errorhandler(405)
def method_not_allowed(e):
    return jsonify({"error": "Method not allowed."}), 405


@app.errorhandler(500)
def internal_error(e):
    return _internal_error()


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5001))
    debug = os.environ.get("FLASK_DEBUG", "0") == "1"
    app.run(host="0.0.0.0", port=port, debug=debug)

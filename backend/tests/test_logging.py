from unittest.mock import patch

from smartgo.main import redact_api_keys
from smartgo.middleware.logging import resource_ids

FAKE_KEY = "AIza" + "x" * 35


def test_redact_key_query_param():
    event = {"url": "https://generativelanguage.googleapis.com/v1beta/models/gemini-2.5-flash:generateContent?key=abc123&alt=sse"}
    out = redact_api_keys(None, None, event.copy())
    assert out["url"].endswith("?key=REDACTED&alt=sse")


def test_redact_google_key_in_message():
    event = {"event": f"Gemini call failed for key {FAKE_KEY}"}
    out = redact_api_keys(None, None, event.copy())
    assert FAKE_KEY not in out["event"]
    assert "REDACTED" in out["event"]


def test_redact_nested():
    event = {"a": {"b": ["foo", f"https://example.test/?key={FAKE_KEY}"]}}
    out = redact_api_keys(None, None, event.copy())
    assert out["a"]["b"][0] == "foo"
    assert all(FAKE_KEY not in x for x in out["a"]["b"])


def test_redact_configured_key():
    with patch("smartgo.main.settings.GEMINI_API_KEY", "plain-secret-value"):
        out = redact_api_keys(None, None, {"error": "auth failed with plain-secret-value", "status": 401})
    assert out == {"error": "auth failed with REDACTED", "status": 401}


class TestRequestContext:
    def test_resource_ids_from_path(self):
        assert resource_ids("/api/trips/12/ai-generate-day") == {"trip_id": 12}
        assert resource_ids("/api/days/7/pois/reorder") == {"day_id": 7}
        assert resource_ids("/api/day-pois/99/schedule") == {"day_poi_id": 99}
        assert resource_ids("/health") == {}

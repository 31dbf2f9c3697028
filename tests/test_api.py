# tests/test_api.py
from unittest.mock import patch

from conftest import ADMIN_KEY
from ledger import StorageUnavailable


def submit(client, **overrides):
    body = {"deviceId": "abc123", "businessNameIndex": 0, "taglineIndex": 2, "customTagline": ""}
    body.update(overrides)
    return client.post("/api/submit", json=body)


def admin_results(client, key=ADMIN_KEY):
    return client.get("/api/admin/results", query_string={"key": key})


def test_health_check(client):
    resp = client.get("/")
    assert resp.status_code == 200
    assert resp.get_data(as_text=True) == "CHAAT Poll API is running"


def test_get_poll_definition(client):
    resp = client.get("/api/polls/businessName")
    assert resp.status_code == 200
    assert resp.get_json() == {
        "id": "businessName",
        "title": "Select a name for our business",
        "description": "Vote for the best business name",
        "options": ["Local CHAAT", "The Local CHAAT HOUSE", "CHAAT MASTI"],
    }
    assert len(client.get("/api/polls/taglines").get_json()["options"]) == 6


def test_unknown_poll_returns_404(client):
    resp = client.get("/api/polls/desserts")
    assert resp.status_code == 404
    assert resp.get_json()["message"] == "Poll not found"


def test_submit_example_vote(client):
    resp = submit(client)
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["success"] is True
    assert body["message"] == "Thanks for voting!"
    assert body["votedAt"]

    results = admin_results(client).get_json()
    assert results["businessName"]["counts"] == [1, 0, 0]
    assert results["taglines"]["counts"] == [0, 0, 1, 0, 0, 0]
    assert results["pairSummary"] == [{"label": "Local CHAAT + Feels like Desi", "count": 1}]
    assert results["totalSubmissions"] == 1


def test_repeat_device_returns_409_without_changes(client):
    submit(client)
    before = admin_results(client).get_json()

    resp = submit(client, businessNameIndex=1, taglineIndex=0)

    assert resp.status_code == 409
    assert resp.get_json()["message"] == "You already voted on this device. Thank you!"
    assert admin_results(client).get_json() == before


def test_validation_failures_return_400(client):
    cases = [
        ({"deviceId": "abc"}, "Invalid deviceId"),
        ({"businessNameIndex": 5}, "Invalid business name selection"),
        ({"taglineIndex": 9}, "Invalid tagline selection"),
        ({"taglineIndex": -1, "customTagline": "   "}, "Please enter your custom tagline"),
    ]
    for overrides, message in cases:
        resp = submit(client, **overrides)
        assert resp.status_code == 400
        assert resp.get_json() == {"success": False, "message": message}
    assert admin_results(client).get_json()["totalSubmissions"] == 0


def test_non_object_body_returns_400(client):
    resp = client.post("/api/submit", data="not json", content_type="text/plain")
    assert resp.status_code == 400
    resp = client.post("/api/submit", json=["abc123", 0, 2])
    assert resp.status_code == 400


def test_custom_tagline_vote(client):
    resp = submit(client, deviceId="device-custom", businessNameIndex=1, taglineIndex=-1,
                  customTagline=" Street food, our way ")
    assert resp.status_code == 200

    results = admin_results(client).get_json()
    assert results["pairSummary"] == [
        {"label": "The Local CHAAT HOUSE + Custom: Street food, our way", "count": 1}
    ]
    assert sum(results["taglines"]["counts"]) == 0


def test_admin_results_require_key(client):
    submit(client)
    assert admin_results(client, key="wrong").status_code == 401
    assert client.get("/api/admin/results").status_code == 401
    assert admin_results(client, key="wrong").get_json()["message"] == "Unauthorized"


def test_admin_totals_match_submissions(client):
    for i in range(4):
        assert submit(client, deviceId=f"device-{i}", businessNameIndex=i % 3).status_code == 200

    results = admin_results(client).get_json()
    assert results["totalSubmissions"] == 4
    assert sum(results["businessName"]["counts"]) == 4
    assert results["businessName"]["counts"] == [2, 1, 1]
    assert results["lastSubmissionAt"]


def test_cors_headers_use_frontend_origin(app, client):
    app.config["FRONTEND_URL"] = "https://chaat.example.com"
    resp = client.get("/api/polls/taglines")
    assert resp.headers["Access-Control-Allow-Origin"] == "https://chaat.example.com"
    assert resp.headers["Vary"] == "Origin"

    preflight = client.options("/api/submit")
    assert preflight.status_code == 200
    assert "POST" in preflight.headers["Access-Control-Allow-Methods"]
    assert preflight.headers["Access-Control-Allow-Headers"] == "Content-Type"


def test_cors_wildcard_by_default(client):
    resp = client.get("/api/polls/businessName")
    assert resp.headers["Access-Control-Allow-Origin"] == "*"
    assert "Access-Control-Allow-Origin" not in client.get("/").headers


def test_storage_failure_returns_500(client, ledger):
    with patch.object(ledger, "record", side_effect=StorageUnavailable()):
        resp = submit(client)
    assert resp.status_code == 500
    assert resp.get_json()["message"] == "DB connection error"


def test_unexpected_error_returns_500(client, ledger):
    with patch.object(ledger, "tallies", side_effect=RuntimeError("boom")):
        resp = admin_results(client)
    assert resp.status_code == 500
    assert resp.get_json()["success"] is False


def test_nul_characters_rejected_with_400(client):
    resp = submit(client, deviceId="abc\x00123")
    assert resp.status_code == 400
    assert resp.get_json()["message"] == "Invalid deviceId"

    resp = submit(client, taglineIndex=-1, customTagline="Spicy\x00vibes")
    assert resp.status_code == 400
    assert resp.get_json()["message"] == "Custom tagline contains invalid characters"
    assert admin_results(client).get_json()["totalSubmissions"] == 0


def test_oversized_device_id_rejected_with_400(client):
    resp = submit(client, deviceId="d" * 5000)
    assert resp.status_code == 400
    assert resp.get_json()["message"] == "Invalid deviceId"
    assert admin_results(client).get_json()["totalSubmissions"] == 0

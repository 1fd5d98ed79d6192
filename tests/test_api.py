import asyncio
import base64

import pytest
from fastapi.testclient import TestClient

from conftest import FakeIdentifier, FakeValuer
from pokevalue import api
from pokevalue.api import create_app
from pokevalue.config import AppConfig
from pokevalue.errors import StoreError
from pokevalue.lifecycle import LifecycleManager
from pokevalue.store import InMemorySubmissionStore
from pokevalue.validation import validate_image_data_uri

CONFIG = AppConfig(store_backend="memory")


class CountingIds:
    def __init__(self) -> None:
        self.issued = []

    def __call__(self) -> str:
        submission_id = f"sub-{len(self.issued) + 1}"
        self.issued.append(submission_id)
        return submission_id


def _client(identifier=None, valuer=None, store=None, ids=None):
    manager = LifecycleManager(
        store or InMemorySubmissionStore(),
        identifier or FakeIdentifier(),
        valuer or FakeValuer(),
        id_factory=ids or CountingIds(),
    )
    return TestClient(create_app(CONFIG, manager))


def test_scan_then_poll_completed_submission(png_data_uri):
    client = _client()

    created = client.post("/api/scan-card", json={"imageDataUri": png_data_uri})
    assert created.status_code == 200
    submission_id = created.json()["submissionId"]

    polled = client.get(f"/api/get-submission/{submission_id}")
    assert polled.status_code == 200
    body = polled.json()
    assert body["id"] == submission_id
    assert body["status"] == "COMPLETED"
    assert body["cardName"] == "Pikachu"
    assert body["cardNumber"] == "025"
    assert body["deckIdLetter"] is None
    assert len(body["estimations"]) == 2
    assert body["estimations"][0] == {
        "marketplace": "eBay",
        "estimatedValue": "$15.50",
        "searchUrl": "https://www.ebay.com/sch/i.html?_nkw=Pikachu+025",
    }
    assert body["errorMessage"] is None
    assert body["imageDataUri"] == png_data_uri
    assert body["createdAt"].endswith("Z")


def test_polling_is_idempotent(png_data_uri):
    client = _client()
    submission_id = client.post("/api/scan-card", json={"imageDataUri": png_data_uri}).json()["submissionId"]

    first = client.get(f"/api/get-submission/{submission_id}")
    second = client.get(f"/api/get-submission/{submission_id}")

    assert first.content == second.content


def test_identification_failure_is_visible_to_the_poller(png_data_uri):
    client = _client(identifier=FakeIdentifier(error=RuntimeError("quota exceeded")))

    submission_id = client.post("/api/scan-card", json={"imageDataUri": png_data_uri}).json()["submissionId"]
    body = client.get(f"/api/get-submission/{submission_id}").json()

    assert body["status"] == "ERROR_IDENTIFICATION"
    assert body["cardName"] is None
    assert body["estimations"] is None
    assert body["errorMessage"]


def test_empty_valuation_is_completed(png_data_uri):
    client = _client(valuer=FakeValuer([]))

    submission_id = client.post("/api/scan-card", json={"imageDataUri": png_data_uri}).json()["submissionId"]
    body = client.get(f"/api/get-submission/{submission_id}").json()

    assert body["status"] == "COMPLETED"
    assert body["estimations"] == []


def test_oversized_image_is_rejected_without_creating_a_submission():
    ids = CountingIds()
    client = _client(ids=ids)
    encoded = base64.b64encode(b"\0" * (CONFIG.max_image_bytes + 4096)).decode("ascii")

    response = client.post("/api/scan-card", json={"imageDataUri": f"data:image/png;base64,{encoded}"})

    assert response.status_code == 413
    assert "too large" in response.json()["error"]
    assert ids.issued == []
    assert client.get("/api/get-submission/sub-1").status_code == 404


@pytest.mark.parametrize(
    "payload",
    [
        {"imageDataUri": "data:text/plain;base64,aGVsbG8="},
        {"imageDataUri": "data:image/png;base64,aGVsbG8gd29ybGQ="},
        {"imageDataUri": 12},
        {},
        ["data:image/png;base64,AAAA"],
    ],
)
def test_invalid_payloads_are_client_errors(payload):
    ids = CountingIds()
    client = _client(ids=ids)

    response = client.post("/api/scan-card", json=payload)

    assert response.status_code == 400
    assert response.json()["error"]
    assert ids.issued == []


def test_unparseable_body_is_a_client_error():
    client = _client()

    response = client.post("/api/scan-card", content=b"{not json", headers={"content-type": "application/json"})

    assert response.status_code == 400
    assert response.json() == {"error": "Invalid request body. Expected JSON with imageDataUri."}


def test_unknown_submission_is_not_found():
    client = _client()

    response = client.get("/api/get-submission/never-created")

    assert response.status_code == 404
    assert response.json() == {"error": "Submission not found."}


def test_store_failure_on_create_is_a_server_error(png_data_uri):
    class BrokenStore(InMemorySubmissionStore):
        def create(self, submission_id, image_reference):
            raise StoreError("database is locked")

    identifier = FakeIdentifier()
    client = _client(identifier=identifier, store=BrokenStore())

    response = client.post("/api/scan-card", json={"imageDataUri": png_data_uri})

    assert response.status_code == 500
    assert response.json() == {"error": "Server error: database is locked"}
    assert identifier.calls == []


def _loop_running() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


def test_scan_card_validates_and_inserts_off_the_event_loop(png_data_uri, monkeypatch):
    seen = {}

    class LoopCheckingStore(InMemorySubmissionStore):
        def create(self, submission_id, image_reference):
            seen["create"] = _loop_running()
            return super().create(submission_id, image_reference)

    def checking_validate(*args, **kwargs):
        seen["validate"] = _loop_running()
        return validate_image_data_uri(*args, **kwargs)

    monkeypatch.setattr(api, "validate_image_data_uri", checking_validate)
    client = _client(store=LoopCheckingStore())

    response = client.post("/api/scan-card", json={"imageDataUri": png_data_uri})

    assert response.status_code == 200
    assert seen == {"validate": False, "create": False}


def test_health():
    assert _client().get("/health").json() == {"status": "ok"}


def test_dry_run_app_from_config(tmp_path, png_data_uri):
    config = AppConfig(database_path=tmp_path / "cards.db", dry_run=True)
    client = TestClient(create_app(config))

    submission_id = client.post("/api/scan-card", json={"imageDataUri": png_data_uri}).json()["submissionId"]
    body = client.get(f"/api/get-submission/{submission_id}").json()

    assert body["status"] == "COMPLETED"
    assert [entry["marketplace"] for entry in body["estimations"]] == ["eBay", "PriceCharting"]
    assert (tmp_path / "cards.db").exists()

import asyncio

import pytest

from inbox import config
from inbox.bulk import BulkSendTracker, estimate_seconds


class FakeClock:
    def __init__(self):
        self.now = 500.0

    def __call__(self):
        return self.now


@pytest.fixture
def fast_bulk(monkeypatch):
    monkeypatch.setattr(config, "BULK_BATCH_SIZE", 2)
    monkeypatch.setattr(config, "BULK_BATCH_DELAY_SECONDS", 0)
    monkeypatch.setattr(config, "BULK_MESSAGE_DELAY_SECONDS", 0)


def test_tracker_keeps_finished_jobs_for_ttl():
    clock = FakeClock()
    tracker = BulkSendTracker(ttl=300, clock=clock)
    job = tracker.start(total=120, batch_size=50)
    assert job.total_batches == 3
    assert job.batch_id.startswith("bulk_")

    clock.now += 1000
    # Running jobs never expire.
    assert tracker.get(job.batch_id) is job

    job.sent = 120
    tracker.finish(job)
    clock.now += 299
    assert tracker.get(job.batch_id).status == "completed"
    clock.now += 2
    assert tracker.get(job.batch_id) is None
    assert len(tracker) == 0


def test_job_summary():
    clock = FakeClock()
    tracker = BulkSendTracker(clock=clock)
    job = tracker.start(total=4, batch_size=50)
    job.sent, job.failed = 3, 1
    clock.now += 2
    tracker.finish(job)
    summary = job.to_dict()
    assert summary["progress"] == 100
    assert summary["duration"] == 2.0
    assert summary["messagesPerSecond"] == 2.0
    assert summary["status"] == "completed"


def test_estimate_seconds(monkeypatch):
    monkeypatch.setattr(config, "BULK_MESSAGE_DELAY_SECONDS", 0.5)
    monkeypatch.setattr(config, "BULK_BATCH_DELAY_SECONDS", 2)
    assert estimate_seconds(10, 4) == 9  # 5s of message delays + 2 batch pauses
    assert estimate_seconds(1, 50) == 1


def test_bulk_send_delivers_in_batches_and_reports_progress(runtime, client, subscribe, gateway, fast_bulk):
    sock = subscribe()
    r = client.post(
        "/api/bulk-send",
        json={
            "recipients": [
                {"phone": "573001112222", "name": "Ana"},
                {"phone": "5215512345678", "name": "Luis"},
                {"phone": "sin número", "name": "Nadie"},
            ],
            "message": "Promo de temporada",
            "agentName": "Laura",
        },
    )
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert body["total"] == 3

    assert gateway.texts == [("+573001112222", "Promo de temporada"), ("5215512345678", "Promo de temporada")]
    stored = asyncio.run(runtime.db_manager.get_messages("+573001112222"))
    assert [(m["sender"], m["agent_name"], m["status"]) for m in stored] == [("agent", "Laura", "delivered")]
    conv = asyncio.run(runtime.db_manager.get_conversation("5215512345678"))
    assert conv["contact_name"] == "Luis"

    progress = sock.events("bulk_send_progress")
    assert [(p["data"]["sent"], p["data"]["failed"], p["data"]["currentBatch"]) for p in progress] == [
        (1, 0, 1),
        (2, 0, 1),
        (2, 1, 2),
    ]
    complete = sock.events("bulk_send_complete")
    assert len(complete) == 1
    assert complete[0]["data"]["failedRecipients"] == [
        {"phone": "", "name": "Nadie", "error": "Invalid phone number"}
    ]

    status = client.get(f"/api/bulk-send/{body['batchId']}").json()["batch"]
    assert status["status"] == "completed"
    assert (status["sent"], status["failed"], status["totalBatches"]) == (2, 1, 2)


def test_bulk_send_counts_undelivered_messages_as_failed(runtime, client, gateway, fast_bulk):
    gateway.fail_text = True
    body = client.post("/api/bulk-send", json={"recipients": ["573001112222"], "message": "Hola"}).json()
    status = client.get(f"/api/bulk-send/{body['batchId']}").json()["batch"]
    assert (status["sent"], status["failed"]) == (0, 1)
    assert status["failedRecipients"][0]["error"] == "Not delivered"


def test_bulk_send_media_only(runtime, client, gateway, fast_bulk):
    r = client.post(
        "/api/bulk-send",
        json={"recipients": [{"phone": "573001112222"}], "mediaUrl": "/uploads/promo.jpg"},
    )
    assert r.status_code == 200
    assert gateway.media == [("+573001112222", "https://inbox.example.com/uploads/promo.jpg", "image", None)]


def test_bulk_send_validation(runtime, client):
    assert client.post("/api/bulk-send", json={"recipients": [], "message": "x"}).status_code == 400
    assert client.post("/api/bulk-send", json={"recipients": [{"phone": "573001112222"}]}).status_code == 400
    assert client.get("/api/bulk-send/bulk_missing").status_code == 404

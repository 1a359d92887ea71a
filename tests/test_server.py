import asyncio
import io
import wave

import pytest
from fastapi.testclient import TestClient

import config
from conftest import FakeClock, FakeDevice, FakeEncoder, make_block
from db.models import FORMAT_CONTAINER
from db.store import MemoryChunkStore
from processing.reconstructor import Reconstructor
from recorder.events import EventBus
from recorder.session import SessionController
from server.app import create_app


def _build(capture_format="pcm-f32", device=None):
    store = MemoryChunkStore()
    device = device or FakeDevice()
    clock = FakeClock(0.0)
    controller = SessionController(
        store,
        device,
        capture_format=capture_format,
        chunk_seconds=2.0,
        encoder=FakeEncoder() if capture_format == FORMAT_CONTAINER else None,
        events=EventBus(),
        clock=clock,
    )
    app = create_app(store, controller, Reconstructor(store))
    return app, device, clock


@pytest.fixture(autouse=True)
def data_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "DATA_DIR", tmp_path)
    monkeypatch.setattr(config, "MIN_FREE_DISK_BYTES", 0)


def _record(client, device, clock, seconds=3.0, title=None):
    body = {"title": title} if title else {}
    started = client.post("/api/recording/start", json=body).json()
    assert started["status"] == "recording"
    for b in range(int(seconds * 50)):
        device.emit(make_block(960, b * 960))
    clock.advance(seconds * 1000)
    stopped = client.post("/api/recording/stop").json()
    assert stopped["status"] == "ready"
    return started["id"]


def test_status_when_idle():
    app, _, _ = _build()
    with TestClient(app) as client:
        data = client.get("/api/status").json()
    assert data["status"] == "idle"
    assert data["is_recording"] is False
    assert data["current_recording_id"] is None


def test_record_list_and_export():
    app, device, clock = _build()
    with TestClient(app) as client:
        recording_id = _record(client, device, clock, title="Reunion")

        listed = client.get("/api/recordings").json()
        assert [r["id"] for r in listed] == [recording_id]
        assert listed[0]["title"] == "Reunion"
        assert listed[0]["duration_ms"] == 3000

        detail = client.get(f"/api/recordings/{recording_id}").json()
        assert detail["chunk_count"] == 2
        assert detail["manifest"]["sample_rate"] == 48000

        timing = client.get(f"/api/recordings/{recording_id}/chunks").json()
        assert [c["index"] for c in timing] == [0, 1]

        audio = client.get(f"/api/recordings/{recording_id}/audio")
        assert audio.status_code == 200
        assert audio.headers["content-type"] == "audio/wav"
        assert len(audio.content) == 44 + 2 * 144000
        with wave.open(io.BytesIO(audio.content), "rb") as wf:
            assert wf.getframerate() == 48000

        play = client.get(f"/api/recordings/{recording_id}/play")
        assert play.status_code == 200
        assert play.content == audio.content


def test_pause_resume_endpoints():
    app, _, _ = _build()
    with TestClient(app) as client:
        client.post("/api/recording/start")
        assert client.post("/api/recording/pause").json()["status"] == "paused"
        assert client.post("/api/recording/pause").json()["status"] == "paused"
        assert client.post("/api/recording/resume").json()["status"] == "recording"
        assert client.get("/api/status").json()["is_recording"] is True
        client.post("/api/recording/stop")


def test_start_while_recording_returns_current_session():
    app, _, _ = _build()
    with TestClient(app) as client:
        first = client.post("/api/recording/start").json()
        again = client.post("/api/recording/start")
        assert again.status_code == 200
        assert again.json()["id"] == first["id"]
        client.post("/api/recording/stop")
        assert len(client.get("/api/recordings").json()) == 1


def test_device_unavailable_returns_503():
    app, _, _ = _build(device=FakeDevice(fail="Permiso denegado"))
    with TestClient(app) as client:
        response = client.post("/api/recording/start")
        assert response.status_code == 503
        status = client.get("/api/status").json()
        assert status["status"] == "idle"
        assert status["last_error"] == "Permiso denegado"
        assert client.get("/api/recordings").json() == []


def test_rename_and_delete():
    app, device, clock = _build()
    with TestClient(app) as client:
        recording_id = _record(client, device, clock, seconds=1.0)

        renamed = client.put(f"/api/recordings/{recording_id}", json={"title": "Nuevo"})
        assert renamed.json()["title"] == "Nuevo"

        assert client.delete(f"/api/recordings/{recording_id}").json() == {"deleted": True}
        assert client.get(f"/api/recordings/{recording_id}").status_code == 404
        assert client.get(f"/api/recordings/{recording_id}/audio").status_code == 404
        assert client.delete(f"/api/recordings/{recording_id}").status_code == 404


def test_cannot_delete_active_recording():
    app, _, _ = _build()
    with TestClient(app) as client:
        recording_id = client.post("/api/recording/start").json()["id"]
        assert client.delete(f"/api/recordings/{recording_id}").status_code == 409
        client.post("/api/recording/stop")


def test_empty_recording_has_no_audio():
    app, _, _ = _build()
    with TestClient(app) as client:
        recording_id = client.post("/api/recording/start").json()["id"]
        client.post("/api/recording/stop")
        assert client.get(f"/api/recordings/{recording_id}/audio").status_code == 404


def test_container_recording_streams_segments():
    app, device, clock = _build(capture_format=FORMAT_CONTAINER)
    with TestClient(app) as client:
        recording_id = _record(client, device, clock, seconds=1.0)

        detail = client.get(f"/api/recordings/{recording_id}").json()
        assert detail["mime_type"] == "audio/mpeg"

        audio = client.get(f"/api/recordings/{recording_id}/audio")
        assert audio.headers["content-type"] == "audio/mpeg"
        assert audio.content.startswith(b"ID3")

        play = client.get(f"/api/recordings/{recording_id}/play")
        assert play.status_code == 200
        assert play.content == audio.content


def test_shutdown_stops_active_recording():
    store = MemoryChunkStore()
    device = FakeDevice()
    controller = SessionController(store, device, chunk_seconds=2.0, clock=FakeClock(0.0))
    app = create_app(store, controller, Reconstructor(store))

    with TestClient(app) as client:
        recording_id = client.post("/api/recording/start").json()["id"]
        device.emit(make_block(960))

    assert controller.status.value == "idle"
    assert device.released
    rec = asyncio.run(store.get_recording(recording_id))
    assert rec.status == "ready"
    assert asyncio.run(store.count_chunks(recording_id)) == 1

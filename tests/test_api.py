"""API tests for saving, loading and replaying paintings."""

from __future__ import annotations

import base64
import gzip
import io
import json
import threading

import pytest
from PIL import Image
from sqlalchemy import text

from gallery.main import app
from gallery.services.paint_service import get_compression_worker, refresh_timelapse_sizes
from gallery.services.timelapse.codec import (
    DATA_URI_PREFIX,
    CompressionWorker,
    decode_timelapse,
    encode_csv,
)
from gallery.services.timelapse.events import parse_events
from gallery.services.timelapse.surface import WHITE, Surface


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _events() -> list[dict]:
    return [
        {
            "type": "stroke",
            "tool": "pen",
            "color": "#ff0000",
            "size": 4,
            "layer": 0,
            "path": [{"x": 2, "y": 5}, {"x": 28, "y": 5}],
        },
        {"type": "fill", "x": 0, "y": 19, "color": "#00ff00", "layer": 0},
    ]


def _payload(**overrides) -> dict:
    body = {"title": "Sunset", "canvas_width": 32, "canvas_height": 20}
    body.update(overrides)
    return body


def _package_blob(**fields) -> str:
    body = {"version": "1.0", "canvasWidth": 32, "canvasHeight": 20, "events": []}
    body.update(fields)
    payload = gzip.compress(json.dumps(body).encode())
    return DATA_URI_PREFIX + base64.b64encode(payload).decode()


class _ThreadRecordingWorker(CompressionWorker):
    def __init__(self) -> None:
        super().__init__()
        self.threads: list[int] = []

    def request(self, message, timeout=None):
        self.threads.append(threading.get_ident())
        return super().request(message, timeout)


async def _save(client, **overrides) -> dict:
    resp = await client.post("/api/v1/paint", json=_payload(**overrides))
    assert resp.status_code == 201, resp.text
    return resp.json()


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "healthy"}


# ---------------------------------------------------------------------------
# Save and load
# ---------------------------------------------------------------------------

class TestSaveAndLoad:
    @pytest.mark.asyncio
    async def test_save_with_events_compresses_server_side(self, client):
        saved = await _save(client, events=_events())
        assert saved["timelapse_available"] is True
        assert saved["timelapse_size"] > 0

        resp = await client.get(f"/api/v1/paint/{saved['id']}/timelapse")
        body = resp.json()
        assert body["success"] is True
        assert body["format"] == "csv"
        assert (body["canvasWidth"], body["canvasHeight"]) == (32, 20)
        assert [e["type"] for e in body["events"]] == ["stroke", "fill"]
        assert body["snapshotCount"] == 0

    @pytest.mark.asyncio
    async def test_save_with_snapshots_uses_package(self, client):
        snapshot = {"frame": 1, "image": Surface(32, 20, fill=WHITE).to_data_uri()}
        saved = await _save(client, events=_events(), snapshots=[snapshot])

        body = (await client.get(f"/api/v1/paint/{saved['id']}/timelapse")).json()
        assert body["format"] == "package"
        assert body["snapshotCount"] == 1

    @pytest.mark.asyncio
    async def test_save_client_blob_is_stored_verbatim(self, client):
        blob = encode_csv(parse_events(_events()), 32, 20)
        saved = await _save(client, timelapse_data=blob)
        assert saved["timelapse_size"] == len(blob)
        assert saved["timelapse_available"] is True

    @pytest.mark.asyncio
    async def test_corrupted_timelapse_does_not_break_load(self, client):
        saved = await _save(
            client,
            timelapse_data="data:application/octet-stream;base64,@@corrupt@@",
            image_data="data:image/png;base64,AAAA",
        )
        resp = await client.get(f"/api/v1/paint/{saved['id']}")
        assert resp.status_code == 200
        body = resp.json()
        assert body["timelapse_available"] is False
        assert body["title"] == "Sunset"
        assert body["image_data"] == "data:image/png;base64,AAAA"

        timelapse = (await client.get(f"/api/v1/paint/{saved['id']}/timelapse")).json()
        assert timelapse == {
            "success": False,
            "format": None,
            "canvasWidth": None,
            "canvasHeight": None,
            "events": [],
            "snapshotCount": 0,
        }

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "fields",
        [
            {"events": 5},
            {"snapshots": 3},
            {"canvasWidth": "abc"},
            {"canvasHeight": 1_000_000},
        ],
    )
    async def test_malformed_package_does_not_break_load(self, client, fields):
        saved = await _save(client, timelapse_data=_package_blob(**fields))
        assert saved["timelapse_available"] is False

        detail = await client.get(f"/api/v1/paint/{saved['id']}")
        assert detail.status_code == 200
        assert detail.json()["timelapse_available"] is False

        timelapse = await client.get(f"/api/v1/paint/{saved['id']}/timelapse")
        assert timelapse.status_code == 200
        assert timelapse.json()["success"] is False

        frame = await client.get(
            f"/api/v1/paint/{saved['id']}/timelapse/frame", params={"index": 0}
        )
        assert frame.status_code == 404

    @pytest.mark.asyncio
    async def test_compression_runs_off_the_event_loop(self, client):
        worker = _ThreadRecordingWorker()
        app.dependency_overrides[get_compression_worker] = lambda: worker
        try:
            saved = await _save(client, events=_events())
        finally:
            worker.shutdown()
        assert saved["timelapse_available"] is True
        assert worker.threads
        assert threading.get_ident() not in worker.threads

    @pytest.mark.asyncio
    async def test_save_without_timelapse(self, client):
        saved = await _save(client)
        assert saved["timelapse_available"] is False
        assert saved["timelapse_size"] == 0

    @pytest.mark.asyncio
    async def test_update_existing(self, client):
        saved = await _save(client)
        updated = await _save(client, id=saved["id"], title="Dawn", events=_events())
        assert updated["id"] == saved["id"]
        assert updated["title"] == "Dawn"
        assert updated["timelapse_available"] is True

    @pytest.mark.asyncio
    async def test_update_missing_returns_404(self, client):
        resp = await client.post("/api/v1/paint", json=_payload(id=999))
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_blob_and_events_together_rejected(self, client):
        resp = await client.post(
            "/api/v1/paint", json=_payload(timelapse_data="x", events=_events())
        )
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_unknown_field_rejected(self, client):
        resp = await client.post("/api/v1/paint", json=_payload(owner="someone"))
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_missing_painting(self, client):
        assert (await client.get("/api/v1/paint/42")).status_code == 404
        assert (await client.get("/api/v1/paint/42/timelapse")).status_code == 404


# ---------------------------------------------------------------------------
# Frame preview
# ---------------------------------------------------------------------------

class TestFramePreview:
    @pytest.mark.asyncio
    async def test_frame_png(self, client):
        saved = await _save(client, events=_events())
        resp = await client.get(
            f"/api/v1/paint/{saved['id']}/timelapse/frame", params={"index": 0}
        )
        assert resp.status_code == 200
        assert resp.headers["content-type"] == "image/png"
        img = Image.open(io.BytesIO(resp.content))
        assert img.size == (32, 20)
        assert img.getpixel((15, 5))[:3] == (255, 0, 0)
        assert img.getpixel((15, 15))[:3] == (255, 255, 255)

    @pytest.mark.asyncio
    async def test_layered_frame_png(self, client):
        saved = await _save(client, events=_events())
        resp = await client.get(
            f"/api/v1/paint/{saved['id']}/timelapse/frame",
            params={"index": 1, "layered": "true"},
        )
        assert resp.status_code == 200
        img = Image.open(io.BytesIO(resp.content))
        assert img.getpixel((15, 15))[:3] == (0, 255, 0)

    @pytest.mark.asyncio
    async def test_frame_without_timelapse_is_404(self, client):
        saved = await _save(client)
        resp = await client.get(
            f"/api/v1/paint/{saved['id']}/timelapse/frame", params={"index": 0}
        )
        assert resp.status_code == 404


# ---------------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------------

class TestListing:
    @pytest.mark.asyncio
    async def test_nsfw_filter(self, client):
        await _save(client, title="Safe")
        await _save(client, title="Spicy", nsfw=True)
        await _save(client, title="Hidden", is_visible=False)

        all_titles = {p["title"] for p in (await client.get("/api/v1/paint")).json()["items"]}
        assert all_titles == {"Safe", "Spicy"}

        safe = (await client.get("/api/v1/paint", params={"nsfw_filter": "safe"})).json()
        assert [p["title"] for p in safe["items"]] == ["Safe"]

        nsfw = (await client.get("/api/v1/paint", params={"nsfw_filter": "nsfw"})).json()
        assert [p["title"] for p in nsfw["items"]] == ["Spicy"]

    @pytest.mark.asyncio
    async def test_pagination(self, client):
        for i in range(3):
            await _save(client, title=f"P{i}")
        page = (await client.get("/api/v1/paint", params={"limit": 2, "offset": 0})).json()
        assert len(page["items"]) == 2
        rest = (await client.get("/api/v1/paint", params={"limit": 2, "offset": 2})).json()
        assert len(rest["items"]) == 1

    @pytest.mark.asyncio
    async def test_invalid_parameters(self, client):
        assert (await client.get("/api/v1/paint", params={"nsfw_filter": "x"})).status_code == 400
        assert (await client.get("/api/v1/paint", params={"limit": 0})).status_code == 422
        assert (await client.get("/api/v1/paint", params={"limit": 101})).status_code == 422


# ---------------------------------------------------------------------------
# Stored blob
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_stored_blob_decodes(client, db_session):
    saved = await _save(client, events=_events())
    row = (
        await db_session.execute(
            text("SELECT timelapse_data FROM paint WHERE id = :id"), {"id": saved["id"]}
        )
    ).fetchone()
    decoded = decode_timelapse(row[0])
    assert decoded is not None
    assert len(decoded.events) == 2


# ---------------------------------------------------------------------------
# Size backfill
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_refresh_timelapse_sizes(client, db_session):
    good = await _save(client, events=_events())
    bad = await _save(client, timelapse_data="not a timelapse")
    await db_session.execute(text("UPDATE paint SET timelapse_size = 0"))
    await db_session.commit()

    result = await refresh_timelapse_sizes(db_session)
    assert {item["id"] for item in result["updated"]} == {good["id"], bad["id"]}
    assert result["unreadable"] == [bad["id"]]

    again = await refresh_timelapse_sizes(db_session)
    assert again == {"updated": [], "unreadable": []}

"""
MQTTWatch main entry point.

Starts a FastAPI HTTP server that:
  1. Exposes read-only snapshots of the aggregation views (topic tree, series,
     message log, per-topic history) under /api
  2. Exposes the user actions (subscribe, clear retained, clear log/series)
  3. Streams state change events over SSE at /events for rendering layers
"""
import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from mqttwatch import config
from mqttwatch.config import HOST, PORT, APP_VERSION, SSE_POLL_INTERVAL
from mqttwatch.core.events import EventFeed
from mqttwatch.session.client import SessionError, SessionNotConnected
from mqttwatch.session.subscription import get_subscription, close_subscription

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("mqttwatch")

# Events older than this are pruned by the background sweep (seconds)
EVENT_MAX_AGE = 600


async def _event_prune_loop():
    while True:
        await asyncio.sleep(60)
        sub = await get_subscription()
        sub.aggregator.events.delete_old(EVENT_MAX_AGE)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: create the subscription context (connects if a broker is configured)
    sub = await get_subscription()
    prune_task = asyncio.create_task(_event_prune_loop())
    logger.info(f"MQTTWatch running at http://{HOST}:{PORT} (session: {sub.state})")
    yield
    prune_task.cancel()
    # Shutdown: stop delivery
    await close_subscription()


app = FastAPI(
    title="MQTTWatch",
    description="Live MQTT telemetry aggregation: topic tree, charts, diffs and message log.",
    version=APP_VERSION,
    lifespan=lifespan,
)


# ── Suppress leftover ASGI RuntimeErrors caused by client disconnects ──────────
class _AsgiDisconnectFilter(logging.Filter):
    """
    Filters uvicorn 'Exception in ASGI application' records that are caused
    by SSE clients going away mid-stream.
    """
    _NOISE = (
        "Unexpected ASGI message 'http.response.start'",
        "Expected ASGI message 'http.response.body'",
    )
    def filter(self, record: logging.LogRecord) -> bool:
        return not any(n in record.getMessage() for n in self._NOISE)

for _ln in ("uvicorn.error", "uvicorn"):
    logging.getLogger(_ln).addFilter(_AsgiDisconnectFilter())


# ─────────────────────────────────────────────
# SSE broadcast of state change events
# ─────────────────────────────────────────────

def _sse_frame(event_id: int, event_type: str, data: dict) -> str:
    return f"id: {event_id}\nevent: {event_type}\ndata: {json.dumps(data)}\n\n"


def _drain_events(feed: EventFeed, last_id: int) -> tuple[list[str], int]:
    """
    All SSE frames for events after `last_id`, plus the new cursor.

    A reader that fell behind the bounded buffer first gets an `events.gap`
    frame naming how many events it missed, so it can reload snapshots.
    """
    frames: list[str] = []
    missed = feed.missed_since(last_id) if last_id > 0 else 0
    if missed:
        logger.warning(f"SSE reader missed {missed} events after id {last_id}")
        frames.append(_sse_frame(last_id + missed, "events.gap",
                                 {"type": "events.gap", "after_id": last_id, "missed": missed}))
        last_id += missed
    for ev in feed.events_since(after_id=last_id, limit=None):
        last_id = ev.id
        frames.append(_sse_frame(ev.id, ev.event_type,
                                 {"type": ev.event_type, "topic": ev.topic, "payload": ev.payload}))
    return frames, last_id


@app.get("/events")
async def global_sse_stream(request: Request, after_id: int = 0):
    """
    SSE stream consumed by renderers.
    Polls the aggregator's event feed and fans out new events as SSE messages.
    """
    async def event_generator():
        sub = await get_subscription()
        last_id = after_id
        while True:
            if await request.is_disconnected():
                break
            frames, last_id = _drain_events(sub.aggregator.events, last_id)
            for frame in frames:
                yield frame
            await asyncio.sleep(SSE_POLL_INTERVAL)

    return StreamingResponse(event_generator(), media_type="text/event-stream")


@app.get("/api/events")
async def api_events(after_id: int = 0, limit: int = 50):
    sub = await get_subscription()
    return [{"id": ev.id, "type": ev.event_type, "topic": ev.topic, "payload": ev.payload,
             "created_at": ev.created_at.isoformat()}
            for ev in sub.aggregator.events.events_since(after_id=after_id, limit=limit)]


# ─────────────────────────────────────────────
# Snapshots
# ─────────────────────────────────────────────

@app.get("/api/status")
async def api_status():
    sub = await get_subscription()
    data = sub.aggregator.stats()
    data.update({
        "state": sub.state,
        "broker": sub.session.url if sub.session else None,
        "subscriptions": [{"topic": t, "qos": q} for t, q in sub.topics],
        "search": sub.aggregator.log.search_text,
    })
    return data


@app.get("/api/topics")
async def api_topics():
    sub = await get_subscription()
    return sub.aggregator.tree.snapshot()


@app.get("/api/messages")
async def api_messages(search: Optional[str] = None, limit: int = 200):
    sub = await get_subscription()
    return [e.to_dict() for e in sub.aggregator.messages(search=search, limit=limit)]


@app.get("/api/messages/{seq}")
async def api_message_detail(seq: int):
    sub = await get_subscription()
    detail = sub.aggregator.detail(seq)
    if detail is None:
        raise HTTPException(status_code=404, detail=f"Message {seq} is not in the log")
    return detail.to_dict()


@app.get("/api/history/{topic:path}")
async def api_history(topic: str):
    sub = await get_subscription()
    record = sub.aggregator.history.get(topic)
    if record is None:
        raise HTTPException(status_code=404, detail=f"No message received on '{topic}'")
    return {"topic": record.topic, "body": record.body_text(), "qos": record.qos,
            "retained": record.retained, "received_at": record.received_at}


@app.get("/api/series")
async def api_series_list():
    sub = await get_subscription()
    return sub.aggregator.series.topics()


@app.get("/api/series/{topic:path}")
async def api_series(topic: str):
    sub = await get_subscription()
    series = sub.aggregator.series.get(topic)
    if series is None:
        raise HTTPException(status_code=404, detail=f"No numeric data for '{topic}'")
    return series.to_dict()


# ─────────────────────────────────────────────
# Actions
# ─────────────────────────────────────────────

class SearchChange(BaseModel):
    text: str = ""

class TopicRef(BaseModel):
    topic: str

class SeriesClear(BaseModel):
    topic: Optional[str] = None

class SubscribeRequest(BaseModel):
    topic: str
    qos: int = Field(default=0, ge=0, le=2)

class ConnectRequest(BaseModel):
    url: str
    version: str = "3"
    username: str = ""
    password: str = ""
    topic: Optional[str] = None
    qos: int = Field(default=0, ge=0, le=2)


@app.post("/api/messages/search")
async def api_set_search(body: SearchChange):
    sub = await get_subscription()
    sub.aggregator.set_search(body.text)
    return {"ok": True, "search": sub.aggregator.log.search_text}


@app.post("/api/messages/clear")
async def api_clear_messages():
    sub = await get_subscription()
    sub.aggregator.clear_messages()
    return {"ok": True}


@app.post("/api/series/clear")
async def api_clear_series(body: SeriesClear):
    sub = await get_subscription()
    if not sub.aggregator.clear_series(body.topic):
        raise HTTPException(status_code=404, detail=f"No numeric data for '{body.topic}'")
    return {"ok": True}


@app.post("/api/topics/clear-retained")
async def api_clear_retained(body: TopicRef):
    sub = await get_subscription()
    try:
        ok = await sub.clear_retained(body.topic)
    except SessionNotConnected as e:
        raise HTTPException(status_code=409, detail=str(e))
    except SessionError as e:
        raise HTTPException(status_code=502, detail=str(e))
    if not ok:
        # Unknown topic is a no-op, reported as a warning rather than an error
        return {"ok": False, "topic": body.topic, "warning": f"Topic '{body.topic}' is not in the tree"}
    return {"ok": True, "topic": body.topic}


@app.post("/api/connect")
async def api_connect(body: ConnectRequest):
    sub = await get_subscription()
    try:
        await sub.connect(body.url, version=body.version,
                          username=body.username, password=body.password)
        if body.topic:
            await sub.subscribe(body.topic, body.qos)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except SessionError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {"ok": True, "state": sub.state}


@app.post("/api/subscribe")
async def api_subscribe(body: SubscribeRequest):
    sub = await get_subscription()
    try:
        await sub.subscribe(body.topic, body.qos)
    except SessionNotConnected as e:
        raise HTTPException(status_code=409, detail=str(e))
    except SessionError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {"ok": True, "topic": body.topic, "qos": body.qos}


@app.post("/api/disconnect")
async def api_disconnect():
    sub = await get_subscription()
    await sub.close()
    return {"ok": True, "state": sub.state}


# ─────────────────────────────────────────────
# Settings (data/config.json, applied on next start)
# ─────────────────────────────────────────────

class SettingsUpdate(BaseModel):
    HOST: Optional[str] = None
    PORT: Optional[int] = None
    BROKER_URL: Optional[str] = None
    SUBSCRIBE_TOPIC: Optional[str] = None
    SUBSCRIBE_QOS: Optional[int] = Field(default=None, ge=0, le=2)
    MQTT_VERSION: Optional[str] = None
    MQTT_USERNAME: Optional[str] = None
    SERIES_CAPACITY: Optional[int] = Field(default=None, gt=0)
    PREVIEW_LENGTH: Optional[int] = Field(default=None, gt=0)
    MESSAGE_LOG_LIMIT: Optional[int] = Field(default=None, ge=0)


@app.get("/api/settings")
async def api_get_settings():
    return config.get_config_dict()


@app.put("/api/settings")
async def api_update_settings(body: SettingsUpdate):
    changes = body.model_dump(exclude_none=True)
    config.save_config_dict(changes)
    logger.info(f"Settings saved: {sorted(changes)}")
    return {"ok": True, "saved": sorted(changes), "restart_required": True}


# ─────────────────────────────────────────────
# Health check
# ─────────────────────────────────────────────

@app.get("/health")
async def health():
    return {"status": "ok", "service": "MQTTWatch"}


# ─────────────────────────────────────────────
# Entry point
# ─────────────────────────────────────────────

if __name__ == "__main__":
    uvicorn.run("mqttwatch.main:app", host=HOST, port=PORT, reload=True)

"""
HTTP gateway: webhook ingress, SSE status stream, health and sweep routes.
"""

from __future__ import annotations

import json
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from loguru import logger
from starlette.datastructures import UploadFile

from chatagg import __version__
from chatagg.buffer.store import StorageError
from chatagg.bus.events import Channel, ConversationKey
from chatagg.channels.web import InvalidWebPayload, validate_web_payload
from chatagg.config.schema import Config
from chatagg.gateway.runtime import Runtime, build_runtime
from chatagg.utils.helpers import truncate


MEDIA_PREFIXES = ("audio/", "image/")

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def create_app(config: Optional[Config] = None, runtime: Optional[Runtime] = None) -> FastAPI:
    """
    Build the FastAPI application around one Runtime.

    The lifespan starts and stops the runtime; a runtime passed in already
    started is left as is.
    """
    config = config or (runtime.config if runtime else Config())
    runtime = runtime or build_runtime(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await runtime.startup()
        try:
            yield
        finally:
            await runtime.shutdown()

    app = FastAPI(title="Chat Aggregator", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime

    origins = config.gateway.cors_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials="*" not in origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ==========================================================
    # Webhook ingress
    # ==========================================================

    @app.post("/webhook")
    async def receive_webhook(request: Request):
        """Accept one platform payload (JSON, or multipart with a media file)."""
        upload_path: Optional[Path] = None
        try:
            if request.headers.get("content-type", "").startswith("multipart/form-data"):
                payload, upload_path = await _read_multipart(request, runtime)
            else:
                payload = await _read_json(request, config.gateway.max_payload_bytes)

            logger.debug("Webhook received | payload={}", truncate(json.dumps(payload, default=str), 500))

            if payload.get("channel") == Channel.WEB.value:
                try:
                    validate_web_payload(payload)
                except InvalidWebPayload as e:
                    logger.warning("Invalid web payload | err={}", e)
                    raise HTTPException(status_code=400, detail=f"Invalid web message: {e}")

            accepted = await runtime.channels.process(payload)
            if accepted is None:
                logger.info("Message filtered out (echo, unknown or empty)")
                return {"status": "filtered"}

            msg = accepted.message
            try:
                await runtime.engine.add_fragment(msg.key, accepted.fragment)
            except StorageError as e:
                logger.error("Buffer unavailable, rejecting message | key={} err={}", msg.key.member, e)
                raise HTTPException(status_code=503, detail="Buffer store unavailable, retry later")

            return {
                "status": "processing",
                "message": "Message received and queued",
                "user_id": msg.user_id,
                "channel": msg.channel.value,
                "type": msg.kind,
                "use_sse": True,
                "sse_endpoint": f"/webhook/sse/{msg.user_id}?channel={msg.channel.value}",
            }
        finally:
            if upload_path is not None:
                upload_path.unlink(missing_ok=True)

    @app.get("/webhook/sse/{user_id}")
    async def sse_stream(user_id: str, channel: str = Channel.WEB.value):
        try:
            key = ConversationKey(Channel(channel), user_id)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown channel: {channel}")

        logger.info("SSE connection request | key={}", key.member)
        return StreamingResponse(
            runtime.notifier.stream(key),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    # ==========================================================
    # Operations
    # ==========================================================

    @app.get("/health")
    async def health():
        report = await runtime.health()
        report["version"] = __version__
        if report["status"] == "up":
            try:
                report["pending_windows"] = await runtime.engine.store.pending_count()
            except StorageError as e:
                logger.warning("Redis dropped during health check | err={}", e)
                report["status"] = "down"
                report["redis"] = "disconnected"
        status_code = 200 if report["status"] == "up" else 503
        return JSONResponse(report, status_code=status_code)

    @app.post("/cron/process-buffer")
    async def process_buffer():
        """Run one recovery sweep over overdue windows."""
        try:
            flushed = await runtime.engine.sweep_now()
        except StorageError as e:
            logger.error("Sweep failed | err={}", e)
            raise HTTPException(status_code=503, detail="Buffer store unavailable")
        return {"status": "ok", "flushed": flushed}

    return app


# ==========================================================
# Request parsing
# ==========================================================

async def _read_json(request: Request, max_bytes: int) -> dict[str, Any]:
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > max_bytes:
        raise HTTPException(status_code=413, detail="Payload too large")

    body = await request.body()
    if len(body) > max_bytes:
        raise HTTPException(status_code=413, detail="Payload too large")
    if not body.strip():
        raise HTTPException(status_code=400, detail="Empty payload")

    try:
        payload = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Body is not valid JSON")

    if not isinstance(payload, dict) or not payload:
        raise HTTPException(status_code=400, detail="Empty payload")
    return payload


async def _read_multipart(request: Request, runtime: Runtime) -> tuple[dict[str, Any], Optional[Path]]:
    max_upload = runtime.config.gateway.max_upload_bytes
    form = await request.form()

    payload: dict[str, Any] = {}
    upload: Optional[UploadFile] = None
    for name, value in form.multi_items():
        if isinstance(value, UploadFile):
            if name == "file":
                upload = value
        else:
            payload[name] = value

    if isinstance(payload.get("payload"), str):
        try:
            payload["payload"] = json.loads(payload["payload"])
        except ValueError:
            pass

    if upload is None:
        if not payload:
            raise HTTPException(status_code=400, detail="Empty payload")
        return payload, None

    content_type = upload.content_type or ""
    if not content_type.startswith(MEDIA_PREFIXES):
        raise HTTPException(status_code=400, detail="Only audio or image files are accepted")

    content = await upload.read(max_upload + 1)
    if len(content) > max_upload:
        raise HTTPException(status_code=413, detail="File too large")

    kind = "audio" if content_type.startswith("audio/") else "image"
    suffix = Path(upload.filename or "").suffix
    path = runtime.paths.ensure().uploads / f"{kind}-{uuid.uuid4().hex}{suffix}"
    path.write_bytes(content)

    payload.update(
        type=kind,
        file_path=str(path),
        original_name=upload.filename,
        mimetype=content_type,
    )
    logger.info("Upload stored | kind={} size={} path={}", kind, len(content), path)
    return payload, path

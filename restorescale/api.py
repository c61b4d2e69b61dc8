"""FastAPI application exposing the restoration/upscaling pipeline."""

import base64
import json
from typing import Any, Dict, Iterator

from fastapi import Depends, FastAPI, File, Form, HTTPException, UploadFile
from fastapi.responses import JSONResponse, StreamingResponse

from restorescale.config import get_config
from restorescale.image_io import encode_png, pixel_buffer_from_bytes
from restorescale.logger import setup_logger
from restorescale.messages import (
    CompleteEvent,
    ErrorEvent,
    EventStream,
    InitializeEvent,
    IntermediateResultEvent,
    PipelineEvent,
    StatusEvent,
    TileEvent,
)
from restorescale.orchestrator import Upscaler, get_upscaler

logger = setup_logger(__name__)
config = get_config()

app = FastAPI(
    title="RestoreScale Pipeline",
    description="Tiled face restoration and super-resolution",
    version="1.0.0",
)


def event_to_dict(event: PipelineEvent) -> Dict[str, Any]:
    """Serialize an event for the newline-delimited JSON stream."""
    if isinstance(event, StatusEvent):
        return {"type": "status", "message": event.message}
    if isinstance(event, InitializeEvent):
        return {"type": "initialize", "width": event.width, "height": event.height}
    if isinstance(event, TileEvent):
        return {
            "type": "tile",
            "x": event.x,
            "y": event.y,
            "width": event.tile.width,
            "height": event.tile.height,
            "png": base64.b64encode(encode_png(event.tile)).decode("ascii"),
        }
    if isinstance(event, IntermediateResultEvent):
        return {
            "type": "intermediate_result",
            "width": event.image.width,
            "height": event.image.height,
            "png": base64.b64encode(encode_png(event.image)).decode("ascii"),
        }
    if isinstance(event, CompleteEvent):
        return {"type": "complete", "inference_time_ms": event.elapsed_ms}
    if isinstance(event, ErrorEvent):
        return {"type": "error", "error": event.detail}
    return {"type": "unknown"}


def _ndjson(stream: EventStream) -> Iterator[str]:
    for event in stream:
        yield json.dumps(event_to_dict(event)) + "\n"


@app.post("/api/models/load")
def load_models(upscaler: Upscaler = Depends(get_upscaler)):
    """Ensure model weights are cached and ready for the execution context."""
    if not upscaler.initialize():
        raise HTTPException(
            status_code=502, detail=upscaler.last_error or "Model loading failed"
        )
    return {"status": "ready", "state": upscaler.state.value}


@app.post("/api/upscale")
async def upscale_image(
    image: UploadFile = File(..., description="Image to restore and upscale"),
    backend: str = Form(config.DEFAULT_BACKEND),
    face_restore: bool = Form(False),
    super_res: bool = Form(True),
    upscaler: Upscaler = Depends(get_upscaler),
):
    """Stream pipeline events as newline-delimited JSON."""
    try:
        content = await image.read()
    except Exception as exc:  # pragma: no cover - FastAPI handles streaming
        logger.error("Failed to read uploaded file: %s", exc)
        raise HTTPException(status_code=400, detail="Unable to read uploaded file")

    try:
        buffer = pixel_buffer_from_bytes(content)
    except ValueError:
        raise HTTPException(status_code=400, detail="Unsupported or corrupted image")

    stream = upscaler.upscale(
        buffer,
        backend=backend,
        use_face_restore=face_restore,
        use_super_res=super_res,
    )

    # Rejected requests carry a single error event and never reach the worker.
    if stream.rejected:
        detail = getattr(stream.terminal_event, "detail", "Request rejected")
        return JSONResponse({"error": detail}, status_code=409)

    return StreamingResponse(_ndjson(stream), media_type="application/x-ndjson")


@app.get("/health")
def health_check(upscaler: Upscaler = Depends(get_upscaler)):
    """Readiness probe reporting the orchestrator state."""
    return {
        "status": "ok",
        "state": upscaler.state.value,
        "models_ready": upscaler.models_ready,
    }


if __name__ == "__main__":  # pragma: no cover
    import uvicorn

    uvicorn.run(
        "restorescale.api:app",
        host=config.API_HOST,
        port=config.API_PORT,
        reload=False,
    )

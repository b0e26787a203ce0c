"""FastAPI entry-point for the thermal scan controller."""
from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator

import psutil
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse

from .config import Settings, get_settings
from .logging_config import configure_logging
from .preview import PreviewBroadcaster
from .session_driver import ScanSessionDriver

logger = logging.getLogger(__name__)

settings: Settings = get_settings()
configure_logging(settings.log_level, settings.log_directory, settings.log_retention_days)
app = FastAPI(title="thermalscan-controller", version="0.1.0")
broadcaster = PreviewBroadcaster(
    jpeg_quality=settings.output.jpeg_quality,
    preview_queue_size=settings.output.preview_queue_size,
    ui_queue_size=settings.output.ui_event_queue_size,
)
driver = ScanSessionDriver(settings=settings, render_target=broadcaster)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> PlainTextResponse:
    """Catch-all exception handler to prevent application crashes."""
    logger.exception(f"Unhandled exception in {request.url.path}: {exc}")
    return PlainTextResponse(
        f"Internal server error: {str(exc)}",
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle request validation errors gracefully."""
    logger.warning(f"Validation error in {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": str(exc)},
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def on_startup() -> None:
    try:
        await driver.start()
        logger.info("Application started successfully")
    except Exception as e:
        logger.exception(f"Failed to start scan driver: {e}")
        logger.error("Application startup failed - running in degraded mode")
        # Don't re-raise - allow app to start in degraded mode


@app.on_event("shutdown")
async def on_shutdown() -> None:
    try:
        await driver.stop()
        logger.info("Application shutdown complete")
    except Exception as e:
        logger.exception(f"Error during shutdown: {e}")


@app.get("/healthz")
async def healthcheck() -> JSONResponse:
    return JSONResponse(
        {
            "status": "ok" if not driver.unavailable and driver.perception_ready else "degraded",
            "phase": driver.phase.value,
            "camera_active": driver.camera_active,
            "camera_error": driver.camera_error,
            "perception_ready": driver.perception_ready,
        }
    )


@app.get("/status")
async def scan_status() -> JSONResponse:
    return JSONResponse(driver.build_status().as_dict())


@app.get("/debug/performance")
async def debug_performance() -> JSONResponse:
    """Get real-time CPU and memory usage plus frame counters."""
    try:
        cpu_percent = psutil.cpu_percent(interval=0.1)
        memory = psutil.virtual_memory()

        return JSONResponse({
            "cpu_percent": round(cpu_percent, 1),
            "memory_percent": round(memory.percent, 1),
            "memory_used_mb": round(memory.used / (1024 * 1024), 1),
            "frames_processed": driver.frames_processed,
            "stale_frames": driver.stale_frames,
        })
    except Exception as e:
        logger.error(f"Performance monitoring error: {e}")
        return JSONResponse({"error": str(e)}, status_code=500)


@app.post("/debug/trigger")
async def debug_trigger() -> JSONResponse:
    """Simulate a face detection while idle."""
    started = driver.trigger()
    logger.info(f"🔧 Debug trigger: started={started}")
    return JSONResponse({"status": "started" if started else "ignored", "phase": driver.phase.value})


@app.post("/debug/countdown-complete")
async def debug_countdown_complete() -> JSONResponse:
    """Signal that the countdown animation finished."""
    accepted = driver.complete_countdown()
    return JSONResponse({"status": "accepted" if accepted else "ignored", "phase": driver.phase.value})


@app.post("/debug/reset")
async def debug_reset() -> JSONResponse:
    driver.reset("debug endpoint")
    return JSONResponse({"status": "ok", "phase": driver.phase.value})


@app.post("/debug/camera-retry")
async def debug_camera_retry() -> JSONResponse:
    acquired = await driver.retry_camera()
    return JSONResponse(
        {"status": "acquired" if acquired else "unavailable", "camera_error": driver.camera_error},
        status_code=200 if acquired else 503,
    )


@app.get("/preview")
async def preview_stream() -> StreamingResponse:
    """Stream the composited scan output as MJPEG."""
    boundary = "frame"

    async def frame_iterator() -> AsyncIterator[bytes]:
        try:
            async for frame in broadcaster.preview_stream():
                header = (
                    f"--{boundary}\r\n"
                    f"Content-Type: image/jpeg\r\n"
                    f"Content-Length: {len(frame)}\r\n\r\n"
                ).encode("ascii")
                yield header + frame + b"\r\n"
        except Exception as e:
            logger.error(f"Preview stream error: {e}")

    media_type = f"multipart/x-mixed-replace; boundary={boundary}"
    return StreamingResponse(frame_iterator(), media_type=media_type)


@app.websocket("/ws/ui")
async def ui_socket(ws: WebSocket) -> None:
    await ws.accept()
    queue = broadcaster.register_ui()
    try:
        while True:
            try:
                event = await queue.get()
            except asyncio.CancelledError:
                break

            payload = {
                "type": event.type,
                "phase": event.phase.value,
                "data": event.data,
            }
            if event.error:
                payload["error"] = event.error

            try:
                await ws.send_json(payload)
            except Exception as e:
                logger.debug(f"WebSocket send failed (client disconnected): {e}")
                break
    except WebSocketDisconnect:
        pass
    except asyncio.CancelledError:
        pass
    except Exception as e:
        logger.error(f"Unexpected error in UI websocket: {e}")
    finally:
        broadcaster.unregister_ui(queue)
        try:
            await ws.close()
        except Exception:
            pass

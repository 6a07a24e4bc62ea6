import logging
import secrets
from typing import Optional, Union

from fastapi import FastAPI, File, Form, Request, UploadFile
from fastapi.responses import FileResponse, JSONResponse, Response
from PIL import Image, UnidentifiedImageError
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from common import config, storage
from common.convert import UnsupportedFormat, convert_image, parse_format
from common.job_schema import validate_quality

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

app = FastAPI(title="CyberMorph API")


def _error(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, **extra})


def _parse_quality(raw) -> int:
    if raw is None or raw == "":
        return config.DEFAULT_QUALITY
    try:
        return validate_quality(int(raw))
    except (TypeError, ValueError):
        raise ValueError("Invalid quality") from None


# ---------- Request bodies ----------
# Fields are optional so missing values produce our own 400 instead of a 422.

class StagingRequest(BaseModel):
    filename: Optional[str] = None
    contentType: Optional[str] = None


class ProcessLargeRequest(BaseModel):
    key: Optional[str] = None
    targetFormat: Optional[str] = None
    quality: Optional[Union[int, str]] = None
    filename: Optional[str] = None


class LocalModeRequest(BaseModel):
    password: Optional[str] = None


# ---------- Conversion endpoints ----------

@app.post("/api/convert")
async def convert(
    file: Optional[UploadFile] = File(None),
    format: Optional[str] = Form(None),
    quality: Optional[str] = Form(None),
):
    """Converts a small upload and streams the converted bytes back."""
    if file is None or not format:
        return _error(400, "File and format are required")

    try:
        target = parse_format(format)
    except UnsupportedFormat:
        return _error(400, "Unsupported format")
    try:
        q = _parse_quality(quality)
    except ValueError:
        return _error(400, "Invalid quality")

    content = await file.read()
    logger.info(f"Received {file.filename} ({len(content)} bytes) -> {target.value} q={q}")

    if not content:
        return _error(400, "Could not read file data")
    if len(content) > config.LARGE_FILE_THRESHOLD:
        return _error(413, "File too large for direct conversion")

    try:
        converted = await run_in_threadpool(convert_image, content, target, q)
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
        logger.error(f"Error processing {file.filename}: {e}")
        return _error(500, "Error processing image", details=str(e))

    logger.info(f"Converted {file.filename}: {converted.size} bytes")
    return Response(
        content=converted.data,
        media_type=target.content_type,
        headers={
            "Cache-Control": "public, max-age=31536000",
            "X-Image-Width": str(converted.width),
            "X-Image-Height": str(converted.height),
        },
    )


@app.post("/api/convert-large")
async def convert_large(payload: StagingRequest):
    """Hands out an upload target for a file too large for /api/convert."""
    if not payload.filename or not payload.contentType:
        logger.warning("Missing file details")
        return _error(400, "Missing file details")

    try:
        target = await run_in_threadpool(
            storage.create_staging_target, payload.filename, payload.contentType
        )
    except (RuntimeError, ValueError) as e:
        logger.error(f"Missing storage configuration: {e}")
        return _error(500, "Server configuration error")

    logger.info(f"Generated staging target for {target.key}")
    return target.model_dump()


@app.post("/api/process-large")
async def process_large(payload: ProcessLargeRequest):
    """Converts a staged object, stores the output and deletes the staged copy."""
    if not payload.key or not payload.targetFormat:
        return _error(400, "Missing required fields")

    try:
        target = parse_format(payload.targetFormat)
    except UnsupportedFormat:
        return _error(400, "Unsupported format")
    try:
        q = _parse_quality(payload.quality)
    except ValueError:
        return _error(400, "Invalid quality")

    try:
        data = await run_in_threadpool(storage.read_staged_bytes, payload.key)
    except storage.StagedObjectNotFound:
        return _error(404, "Staged file not found")
    except ValueError as e:
        return _error(400, str(e))

    try:
        converted = await run_in_threadpool(convert_image, data, target, q)
        url = await run_in_threadpool(storage.store_output, converted.data, target)
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError, RuntimeError) as e:
        logger.error(f"Error processing large file {payload.key}: {e}")
        return _error(500, str(e) or "Failed to process file")

    # Kept on failure so a retry can convert the same staged object again
    await run_in_threadpool(storage.delete_staged, payload.key)

    logger.info(f"Large file processed successfully: {payload.key}")
    return {
        "url": url,
        "format": target.value,
        "size": converted.size,
        "width": converted.width,
        "height": converted.height,
    }


# ---------- Local storage backend ----------

@app.put("/api/staging/{key:path}")
async def receive_staged(key: str, request: Request):
    """Upload target handed out by create_staging_target() on the local backend."""
    if config.STORAGE_BACKEND != "local":
        return _error(404, "Not found")

    body = await request.body()
    try:
        await run_in_threadpool(storage.save_staged_bytes, key, body)
    except ValueError as e:
        return _error(400, str(e))
    return {"key": key, "size": len(body)}


@app.get("/api/outputs/{name}")
def get_output(name: str):
    if config.STORAGE_BACKEND != "local":
        return _error(404, "Not found")
    try:
        path = storage.local_output_path(name)
    except ValueError:
        return _error(404, "Result not available")
    if not path.is_file():
        return _error(404, "Result file missing")

    try:
        media_type = parse_format(path.suffix.lstrip(".")).content_type
    except UnsupportedFormat:
        media_type = "application/octet-stream"
    return FileResponse(path, media_type=media_type)


# ---------- Local mode ----------

def _local_mode_enabled(request: Request) -> bool:
    return request.cookies.get(config.LOCAL_MODE_COOKIE) is not None


@app.post("/api/local-mode")
async def enable_local_mode(payload: LocalModeRequest):
    if not config.LOCAL_MODE_PASSWORD:
        logger.error("LOCAL_MODE_PASSWORD is not set")
        return _error(503, "Local mode is not configured")

    if not payload.password or not secrets.compare_digest(
        payload.password.encode(), config.LOCAL_MODE_PASSWORD.encode()
    ):
        return _error(401, "Invalid password")

    response = JSONResponse({"success": True})
    response.set_cookie(
        config.LOCAL_MODE_COOKIE,
        "true",
        max_age=config.LOCAL_MODE_MAX_AGE,
        path="/",
        httponly=True,
        samesite="lax",
        secure=config.ENVIRONMENT == "production",
    )
    return response


@app.delete("/api/local-mode")
async def disable_local_mode():
    response = JSONResponse({"success": True})
    response.delete_cookie(config.LOCAL_MODE_COOKIE, path="/")
    return response


@app.get("/api/local-mode")
@app.get("/api/local-mode/status")
async def local_mode_status(request: Request):
    return {"isEnabled": _local_mode_enabled(request)}


@app.get("/health")
def health():
    return {"status": "healthy"}


@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return _error(500, "Server error", details=str(exc))



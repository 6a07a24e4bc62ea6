"""
Client side of the API: the calls the conversion queue makes, plus the
staging upload that happens before a large file is queued.
"""
import asyncio
import base64
import logging
from typing import Optional, Union

import httpx

from common import config
from common.convert import convert_image
from common.job_schema import (
    BytesSource,
    InlineResult,
    RemoteResult,
    StagedSource,
    StagingTarget,
    TargetFormat,
)

logger = logging.getLogger(__name__)

ConversionResult = Union[InlineResult, RemoteResult]

DEFAULT_FAILURE = "Conversion failed"
MALFORMED_RESPONSE = "Malformed conversion response"


class ConversionError(Exception):
    pass


class StagingError(Exception):
    pass


def _error_message(response: httpx.Response, default: str) -> str:
    """Uses the {"error": ...} body when the server sent one."""
    try:
        body = response.json()
    except ValueError:
        return default
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return default


def _int_or_none(value) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(value)


def parse_result(response: httpx.Response, target_format: TargetFormat) -> ConversionResult:
    """
    A successful conversion is either the converted bytes themselves or a JSON
    descriptor {url?, data?, format, size, width, height}.
    """
    content_type = response.headers.get("content-type", "")
    try:
        if not content_type.startswith("application/json"):
            return InlineResult(
                data=response.content,
                format=target_format,
                size=len(response.content),
                width=_int_or_none(response.headers.get("x-image-width")),
                height=_int_or_none(response.headers.get("x-image-height")),
            )

        body = response.json()
        if not isinstance(body, dict):
            raise ConversionError(MALFORMED_RESPONSE)
        fmt = TargetFormat.parse(body.get("format") or target_format)
        dims = {
            "width": _int_or_none(body.get("width")),
            "height": _int_or_none(body.get("height")),
        }
        if body.get("url"):
            return RemoteResult(url=body["url"], format=fmt, size=int(body.get("size") or 0), **dims)
        if body.get("data"):
            data = base64.b64decode(body["data"], validate=True)
            return InlineResult(data=data, format=fmt, size=int(body.get("size") or len(data)), **dims)
    except (ValueError, TypeError) as e:
        raise ConversionError(MALFORMED_RESPONSE) from e
    raise ConversionError(MALFORMED_RESPONSE)


async def convert_in_process(source: BytesSource, target_format: TargetFormat,
                             quality: int) -> InlineResult:
    """Local mode: converts on this machine instead of calling /api/convert."""
    converted = await asyncio.to_thread(convert_image, source.data, target_format, quality)
    return InlineResult(
        data=converted.data,
        format=converted.format,
        size=converted.size,
        width=converted.width,
        height=converted.height,
    )


class ConversionClient:
    """
    Async HTTP client for the CyberMorph API.

    Pass an httpx.AsyncClient to share a connection pool (or a mock transport
    in tests); otherwise one is created and closed with this object.
    """

    def __init__(self, base_url: str = config.API_BASE_URL,
                 http: Optional[httpx.AsyncClient] = None,
                 timeout: float = config.REQUEST_TIMEOUT_SECONDS):
        self._owns_http = http is None
        self.http = http or httpx.AsyncClient(
            base_url=base_url, timeout=timeout, follow_redirects=True
        )

    async def __aenter__(self) -> "ConversionClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http:
            await self.http.aclose()

    async def _post(self, url: str, **kwargs) -> httpx.Response:
        try:
            response = await self.http.post(url, **kwargs)
        except httpx.HTTPError as e:
            logger.warning(f"Request to {url} failed: {e!r}")
            raise ConversionError(DEFAULT_FAILURE) from e
        if not response.is_success:
            raise ConversionError(_error_message(response, DEFAULT_FAILURE))
        return response

    # ---------- conversion ----------

    async def convert_small(self, source: BytesSource, target_format: TargetFormat,
                            quality: int) -> ConversionResult:
        fmt = TargetFormat.parse(target_format)
        response = await self._post(
            "/api/convert",
            files={"file": (source.filename, source.data, source.content_type)},
            data={"format": fmt.value, "quality": str(quality)},
        )
        return parse_result(response, fmt)

    async def convert_large(self, key: str, target_format: TargetFormat, quality: int,
                            filename: Optional[str] = None) -> ConversionResult:
        fmt = TargetFormat.parse(target_format)
        response = await self._post(
            "/api/process-large",
            json={"key": key, "targetFormat": fmt.value, "quality": quality, "filename": filename},
        )
        return parse_result(response, fmt)

    # ---------- staging ----------

    async def request_staging(self, filename: str, content_type: str) -> StagingTarget:
        try:
            response = await self.http.post(
                "/api/convert-large", json={"filename": filename, "contentType": content_type}
            )
        except httpx.HTTPError as e:
            raise StagingError(f"Could not reach the staging endpoint: {e}") from e
        if not response.is_success:
            raise StagingError(_error_message(response, "Failed to get upload URL"))
        try:
            return StagingTarget(**response.json())
        except (ValueError, TypeError) as e:
            raise StagingError("Malformed staging response") from e

    async def upload_staged(self, target: StagingTarget, filename: str,
                            data: bytes, content_type: str) -> None:
        try:
            if target.method == "POST":
                response = await self.http.post(
                    target.url,
                    data=target.fields,
                    files={"file": (filename, data, content_type)},
                )
            else:
                headers = {"Content-Type": content_type, **target.headers}
                response = await self.http.put(target.url, content=data, headers=headers)
        except httpx.HTTPError as e:
            raise StagingError(f"Upload failed: {e}") from e
        if not response.is_success:
            raise StagingError(f"Upload failed with status {response.status_code}")

    async def stage_file(self, filename: str, content_type: str, data: bytes) -> StagedSource:
        """Uploads a large file to object storage; the returned source can be queued."""
        if len(data) > config.STAGING_MAX_BYTES:
            raise StagingError(
                f"File exceeds the {config.STAGING_MAX_BYTES // (1024 * 1024)} MB upload limit"
            )
        target = await self.request_staging(filename, content_type)
        await self.upload_staged(target, filename, data, content_type)
        logger.info(f"Staged {filename} as {target.key}")
        return StagedSource(filename=filename, key=target.key)

    # ---------- results ----------

    async def download(self, url: str) -> bytes:
        try:
            response = await self.http.get(url)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ConversionError(f"Download failed: {e}") from e
        return response.content

    # ---------- local mode ----------

    async def local_mode_status(self) -> bool:
        try:
            response = await self.http.get("/api/local-mode/status")
            response.raise_for_status()
            return bool(response.json().get("isEnabled"))
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            logger.error(f"Error checking local mode: {e}")
            return False

    async def enable_local_mode(self, password: str) -> None:
        response = await self.http.post("/api/local-mode", json={"password": password})
        if not response.is_success:
            raise PermissionError(_error_message(response, "Failed to enable local mode"))

    async def disable_local_mode(self) -> None:
        response = await self.http.delete("/api/local-mode")
        response.raise_for_status()

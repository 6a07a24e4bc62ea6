import asyncio
import io

import pytest
from PIL import Image

from common import config
from common.job_schema import BytesSource, ConversionRequest, InlineResult, StagedSource


def make_image_bytes(fmt="PNG", size=(32, 24), mode="RGB", color=(200, 40, 40)):
    if mode == "RGBA" and len(color) == 3:
        color = color + (128,)
    buf = io.BytesIO()
    Image.new(mode, size, color).save(buf, format=fmt)
    return buf.getvalue()


def small_request(name, fmt="webp", quality=80, data=b"not-really-an-image"):
    return ConversionRequest(
        source=BytesSource(filename=name, content_type="image/png", data=data),
        target_format=fmt,
        quality=quality,
    )


def staged_request(name, key=None, fmt="webp", quality=80):
    return ConversionRequest(
        source=StagedSource(filename=name, key=key or f"uploads/abc-{name}"),
        target_format=fmt,
        quality=quality,
    )


class FakeConverter:
    """
    Stands in for ConversionClient. Records call order, yields once per call so
    other coroutines get a chance to run, and fails for filenames listed in
    `failures`. `on_call(name)` runs while a call is in flight.
    """

    def __init__(self, failures=None, on_call=None):
        self.failures = failures or {}
        self.on_call = on_call
        self.calls = []
        self.events = []

    async def convert_small(self, source, target_format, quality):
        return await self._run("small", source.filename, target_format, quality)

    async def convert_large(self, key, target_format, quality, filename=None):
        return await self._run("large", filename, target_format, quality)

    async def _run(self, kind, name, target_format, quality):
        self.calls.append((kind, name, target_format, quality))
        self.events.append(("start", name))
        if self.on_call is not None:
            self.on_call(name)
        await asyncio.sleep(0)
        self.events.append(("end", name))
        if name in self.failures:
            raise self.failures[name]
        data = f"converted-{name}".encode()
        return InlineResult(data=data, format=target_format, size=len(data), width=1, height=1)


@pytest.fixture()
def local_storage(tmp_path, monkeypatch):
    staging = tmp_path / "staging"
    output = tmp_path / "output"
    staging.mkdir()
    output.mkdir()
    monkeypatch.setattr(config, "STORAGE_BACKEND", "local")
    monkeypatch.setattr(config, "LOCAL_STAGING_DIR", staging)
    monkeypatch.setattr(config, "LOCAL_OUTPUT_DIR", output)
    monkeypatch.setattr(config, "PUBLIC_BASE_URL", "http://testserver")
    return tmp_path


@pytest.fixture()
def api_client(local_storage):
    from fastapi.testclient import TestClient

    from api.main import app

    with TestClient(app) as client:
        yield client


@pytest.fixture()
def png_bytes():
    return make_image_bytes("PNG")

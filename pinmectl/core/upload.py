"""Best-effort photo uploads.

Two independent strategies produce a public URL for the same object: a
direct signed-URL storage upload and a server-function proxy.
:func:`hedged_first_successful` starts the first, hedges with the second if
the first has not settled after a short delay, and keeps whichever succeeds
first. :class:`PhotoUploader` wraps that in a degradation ladder that
re-encodes the image smaller whenever an attempt times out.
"""

from __future__ import annotations

import asyncio
import io
import logging
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

import httpx
from PIL import Image, UnidentifiedImageError

from pinmectl.core.backend import BackendClient
from pinmectl.core.errors import (
    BackendError,
    HedgedRequestError,
    UploadError,
    UploadTimeoutError,
)
from pinmectl.core.model import QualityRung, UploadResult, UploadSettings, UploadTask

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

RESAMPLE_FILTER = Image.LANCZOS


async def hedged_first_successful(
    primary: Callable[[], Awaitable[T]],
    secondary: Callable[[], Awaitable[T]],
    hedge_delay_s: float = 1.5,
) -> T:
    """Return the first successful result of ``primary`` or ``secondary``.

    ``secondary`` is only started once ``primary`` has been running for
    ``hedge_delay_s`` without settling, or as soon as ``primary`` fails.
    The slower task is cancelled once a winner is known. If both fail a
    :class:`HedgedRequestError` carrying both exceptions is raised.
    """
    errors: list[BaseException] = []
    first = asyncio.ensure_future(primary())
    running: set[asyncio.Future[T]] = {first}
    try:
        done, running = await asyncio.wait(running, timeout=hedge_delay_s)
        if first in done:
            exc = first.exception()
            if exc is None:
                return first.result()
            errors.append(exc)
            LOGGER.info("Primary strategy failed early (%s); starting secondary", exc)
        else:
            LOGGER.info("Primary strategy still running after %.1fs; hedging", hedge_delay_s)
        running.add(asyncio.ensure_future(secondary()))

        while running:
            done, running = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                exc = task.exception()
                if exc is None:
                    return task.result()
                errors.append(exc)
    finally:
        for task in running:
            task.cancel()

    raise HedgedRequestError(tuple(errors)) from errors[-1]


def is_timeout(exc: BaseException) -> bool:
    """Whether a failure should be answered by degrading the payload."""
    if isinstance(exc, HedgedRequestError):
        return any(is_timeout(e) for e in exc.errors)
    if isinstance(exc, UploadError):
        return exc.timed_out
    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
        return True
    return "timed out" in str(exc).lower()


def reencode_image(data: bytes, rung: QualityRung) -> bytes:
    """Scale ``data`` down to ``rung.max_width`` (never up) and save as JPEG."""
    out = io.BytesIO()
    try:
        with Image.open(io.BytesIO(data)) as img:
            img = img.convert("RGB")
            if img.width > rung.max_width:
                height = max(1, round(img.height * rung.max_width / img.width))
                img = img.resize((rung.max_width, height), RESAMPLE_FILTER)
            img.save(out, format="JPEG", quality=int(round(rung.quality * 100)), optimize=True)
    except (UnidentifiedImageError, OSError) as exc:
        raise UploadError(f"Could not re-encode image for a smaller upload: {exc}", timed_out=False) from exc
    return out.getvalue()


def _extension(content_type: str) -> str:
    return "png" if "png" in content_type else "jpg"


def _jpeg_name(filename: str) -> str:
    stem, dot, _ = filename.rpartition(".")
    return f"{stem if dot else filename}.jpg"


class PhotoUploader:
    def __init__(self, backend: BackendClient, settings: UploadSettings | None = None) -> None:
        self.backend = backend
        self.settings = settings or UploadSettings()

    async def _bounded(self, awaitable: Awaitable[T], timeout_s: float) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout_s)
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise UploadTimeoutError() from exc

    async def upload_direct(self, path: str, data: bytes, content_type: str) -> str:
        bucket = self.settings.bucket
        timeout = self.settings.direct_timeout_s
        try:
            signed = await self._bounded(self.backend.create_signed_upload(bucket, path), timeout)
            await self._bounded(
                self.backend.upload_to_signed_url(bucket, signed, data, content_type), timeout
            )
        except BackendError as exc:
            raise UploadError(f"Direct upload failed: {exc}") from exc
        return self.backend.public_url(bucket, path)

    async def upload_proxy(self, path: str, data: bytes, content_type: str, owner_id: str) -> str:
        filename = path.rsplit("/", 1)[-1]
        try:
            return await self._bounded(
                self.backend.upload_via_function(
                    self.settings.proxy_function,
                    filename=filename,
                    data=data,
                    content_type=content_type,
                    owner_id=owner_id,
                ),
                self.settings.proxy_timeout_s,
            )
        except BackendError as exc:
            raise UploadError(f"Proxy upload failed: {exc}") from exc

    async def upload_once(self, task: UploadTask, path: str) -> str:
        return await hedged_first_successful(
            lambda: self.upload_direct(path, task.data, task.content_type),
            lambda: self.upload_proxy(path, task.data, task.content_type, task.owner_id),
            self.settings.hedge_delay_s,
        )

    async def upload(self, task: UploadTask) -> UploadResult:
        """Upload with one retry per ladder rung on timeout; other failures surface immediately."""
        filename = task.filename or f"{int(time.time() * 1000)}.{_extension(task.content_type)}"
        rungs: list[QualityRung | None] = [None, *self.settings.ladder]

        current = task
        path = f"{task.owner_id}/{filename}"
        last_error: BaseException = UploadError("Upload was not attempted")
        for attempt, rung in enumerate(rungs, start=1):
            if rung is not None:
                LOGGER.warning(
                    "Upload timed out; retrying at %dpx / quality %.1f", rung.max_width, rung.quality
                )
                # Degraded bytes are JPEG whatever the source was.
                degraded_name = _jpeg_name(filename)
                path = f"{task.owner_id}/{degraded_name}"
                current = UploadTask(
                    data=reencode_image(task.data, rung),
                    content_type="image/jpeg",
                    owner_id=task.owner_id,
                    filename=degraded_name,
                )
            try:
                url = await self.upload_once(current, path)
            except (UploadError, HedgedRequestError) as exc:
                last_error = exc
                if not is_timeout(exc):
                    break
                continue
            return UploadResult(public_url=url, path=path, attempts=attempt, degraded=rung)

        if isinstance(last_error, UploadError):
            raise last_error
        raise UploadError(str(last_error), timed_out=is_timeout(last_error)) from last_error

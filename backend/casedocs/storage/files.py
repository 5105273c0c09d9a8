"""
Source File Loader

A document's `file_url` is either:

  • an object key in the documents bucket   e.g.  cases/<case_id>/scan.pdf
  • an s3:// URI                            e.g.  s3://bucket/cases/<id>/scan.pdf
  • an absolute http(s) URL                 e.g.  https://files.example.com/scan.pdf

S3 objects are read through aioboto3; URLs through httpx with an explicit
timeout so a stalled download can never hold a job forever. Missing objects
raise FileNotFoundError (terminal for the job); network failures propagate
as httpx / botocore errors for the processor to classify.
"""

from __future__ import annotations

import logging
import mimetypes
import os
from dataclasses import dataclass
from urllib.parse import urlparse

import aioboto3
import httpx
from botocore.exceptions import ClientError

from casedocs.core.errors import TerminalPipelineError

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = frozenset({"jpg", "jpeg", "png", "gif", "webp", "bmp", "tif", "tiff"})
TEXT_EXTENSIONS  = frozenset({"txt", "md", "csv", "json", "log", "rtf", "xml", "html", "htm"})
DOCX_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"


# ---------------------------------------------------------------------------
# Blob
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FileBlob:
    data:         bytes
    content_type: str
    filename:     str

    @property
    def extension(self) -> str:
        return os.path.splitext(self.filename)[1].lstrip(".").lower()

    @property
    def is_image(self) -> bool:
        return self.content_type.startswith("image/") or self.extension in IMAGE_EXTENSIONS

    @property
    def is_pdf(self) -> bool:
        return "pdf" in self.content_type or self.extension == "pdf"

    @property
    def is_ocr_target(self) -> bool:
        return self.is_image or self.is_pdf

    @property
    def is_docx(self) -> bool:
        return self.content_type == DOCX_CONTENT_TYPE or self.extension == "docx"

    @property
    def is_text(self) -> bool:
        return self.content_type.startswith("text/") or self.extension in TEXT_EXTENSIONS

    @property
    def type_label(self) -> str:
        return self.extension or self.content_type or "unknown"


def guess_content_type(filename: str, declared: str | None = None) -> str:
    declared = (declared or "").split(";")[0].strip().lower()
    if declared and declared != "application/octet-stream":
        return declared
    guessed, _ = mimetypes.guess_type(filename)
    return guessed or declared or "application/octet-stream"


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

class FileLoader:
    """Fetch a document's source bytes from S3 or an http(s) URL."""

    def __init__(
        self,
        bucket: str,
        *,
        region: str = "us-east-1",
        timeout: float = 60.0,
        max_bytes: int = 100 * 1024 * 1024,
        session: aioboto3.Session | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._bucket    = bucket
        self._region    = region
        self._timeout   = timeout
        self._max_bytes = max_bytes
        self._session   = session or aioboto3.Session()
        self._transport = transport

    async def load(self, file_url: str) -> FileBlob:
        parsed = urlparse(file_url)
        if parsed.scheme in ("http", "https"):
            return await self._load_http(file_url)
        if parsed.scheme == "s3":
            return await self._load_s3(parsed.netloc, parsed.path.lstrip("/"))
        return await self._load_s3(self._bucket, file_url.lstrip("/"))

    async def _load_http(self, url: str) -> FileBlob:
        async with httpx.AsyncClient(
            timeout=self._timeout, follow_redirects=True, transport=self._transport,
        ) as client:
            resp = await client.get(url)

        if resp.status_code == 404:
            raise FileNotFoundError(f"Source file not found: {url}")
        resp.raise_for_status()
        self._check_size(len(resp.content), url)

        filename = os.path.basename(urlparse(url).path) or "document"
        blob = FileBlob(
            data=resp.content,
            content_type=guess_content_type(filename, resp.headers.get("content-type")),
            filename=filename,
        )
        logger.info("FileLoader | source=http bytes=%d type=%s", len(blob.data), blob.content_type)
        return blob

    async def _load_s3(self, bucket: str, key: str) -> FileBlob:
        async with self._session.client("s3", region_name=self._region) as s3:
            try:
                resp = await s3.get_object(Bucket=bucket, Key=key)
                data = await resp["Body"].read()
            except ClientError as exc:
                code = exc.response["Error"]["Code"]
                if code in ("NoSuchKey", "404", "NoSuchBucket"):
                    raise FileNotFoundError(f"Object not found: s3://{bucket}/{key}") from exc
                raise

        self._check_size(len(data), key)
        filename = os.path.basename(key) or "document"
        blob = FileBlob(
            data=data,
            content_type=guess_content_type(filename, resp.get("ContentType")),
            filename=filename,
        )
        logger.info("FileLoader | source=s3 bytes=%d type=%s", len(blob.data), blob.content_type)
        return blob

    def _check_size(self, size: int, ref: str) -> None:
        if size > self._max_bytes:
            raise TerminalPipelineError(
                f"Source file {ref} is {size} bytes; limit is {self._max_bytes}"
            )

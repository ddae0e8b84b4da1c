"""Resolve attachment references to a filename, content type and raw bytes.

Supported references are plain filesystem paths, ``file://`` URIs and
``http(s)://`` URLs. Anything else is reported as not found so the turn can
carry on without the attachment.
"""

from __future__ import annotations

import logging
import mimetypes
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple
from urllib.parse import unquote, urlparse

import requests

from ..domain.errors import AttachmentNotFound

logger = logging.getLogger("edgechat.ingest")

_DISPOSITION_FILENAME = re.compile(r"filename\*?=(?:UTF-8'')?\"?([^\";]+)\"?", re.IGNORECASE)


@dataclass(frozen=True)
class ResolvedDocument:
    filename: str
    content_type: Optional[str]
    data: bytes


def _last_segment(path: str) -> Optional[str]:
    if not path:
        return None
    cut = path.rstrip("/").rfind("/")
    name = path[cut + 1:] if cut != -1 else path
    name = name.strip()
    return name or None


def _is_local(scheme: str) -> bool:
    # Windows drive letters parse as one-letter schemes.
    return scheme in ("", "file") or len(scheme) == 1


class ContentResolver:
    def __init__(self, session: Optional[requests.Session] = None, timeout: Tuple[int, int] = (3, 30)) -> None:
        self._session = session or requests.Session()
        self._timeout = timeout

    def display_name(self, ref: str) -> Optional[str]:
        """Best filename available without reading the attachment."""

        try:
            parsed = urlparse(ref)
        except ValueError:
            logger.debug("attachment_ref_unparseable", extra={"ref": ref})
            return None
        if parsed.scheme == "file" or parsed.scheme in ("http", "https"):
            return _last_segment(unquote(parsed.path))
        if _is_local(parsed.scheme):
            return _last_segment(ref.replace("\\", "/"))
        return _last_segment(unquote(parsed.path))

    def resolve(self, ref: str) -> ResolvedDocument:
        try:
            parsed = urlparse(ref)
        except ValueError as exc:
            raise AttachmentNotFound(f"Malformed attachment reference: {exc}") from exc
        if parsed.scheme in ("http", "https"):
            return self._fetch(ref)
        if _is_local(parsed.scheme):
            path = Path(unquote(parsed.path)) if parsed.scheme == "file" else Path(ref)
            return self._read_file(path)
        raise AttachmentNotFound(f"Unsupported attachment reference: {parsed.scheme}://")

    def _read_file(self, path: Path) -> ResolvedDocument:
        if not path.is_file():
            raise AttachmentNotFound(f"No such file: {path}", filename=path.name or None)
        try:
            data = path.read_bytes()
        except OSError as exc:
            raise AttachmentNotFound(str(exc), filename=path.name) from exc
        content_type, _ = mimetypes.guess_type(path.name)
        return ResolvedDocument(filename=path.name, content_type=content_type, data=data)

    def _fetch(self, url: str) -> ResolvedDocument:
        try:
            resp = self._session.get(url, timeout=self._timeout)
            resp.raise_for_status()
        except requests.exceptions.RequestException as exc:
            logger.warning("attachment_fetch_failed", extra={"url": url, "err": str(exc)})
            raise AttachmentNotFound(str(exc)) from exc

        filename = None
        disposition = resp.headers.get("Content-Disposition") or ""
        match = _DISPOSITION_FILENAME.search(disposition)
        if match:
            filename = unquote(match.group(1)).strip() or None
        if not filename:
            filename = self.display_name(url) or ""

        content_type = (resp.headers.get("Content-Type") or "").split(";")[0].strip().lower() or None
        if content_type is None and filename:
            content_type, _ = mimetypes.guess_type(filename)
        return ResolvedDocument(filename=filename, content_type=content_type, data=resp.content)

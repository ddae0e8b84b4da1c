from __future__ import annotations

import pytest
import requests

from edgechat.domain.errors import AttachmentNotFound
from edgechat.infrastructure.content_resolver import ContentResolver


class StubResponse:
    def __init__(self, content=b"", headers=None, status=200):
        self.content = content
        self.headers = headers or {}
        self.status_code = status

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"{self.status_code} error")


class StubSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.urls = []

    def get(self, url, timeout=None):
        self.urls.append(url)
        if self.error is not None:
            raise self.error
        return self.response


def test_resolves_plain_path(tmp_path):
    doc = tmp_path / "paper.pdf"
    doc.write_bytes(b"%PDF-1.7")

    resolved = ContentResolver(session=StubSession()).resolve(str(doc))

    assert resolved.filename == "paper.pdf"
    assert resolved.content_type == "application/pdf"
    assert resolved.data == b"%PDF-1.7"


def test_resolves_file_uri(tmp_path):
    doc = tmp_path / "my notes.txt"
    doc.write_text("hi", encoding="utf-8")

    resolved = ContentResolver(session=StubSession()).resolve(doc.as_uri())

    assert resolved.filename == "my notes.txt"
    assert resolved.data == b"hi"


def test_missing_file_is_not_found(tmp_path):
    with pytest.raises(AttachmentNotFound):
        ContentResolver(session=StubSession()).resolve(str(tmp_path / "nope.txt"))


def test_http_uses_disposition_and_content_type():
    session = StubSession(
        StubResponse(
            content=b"body",
            headers={
                "Content-Disposition": 'attachment; filename="Quarterly.docx"',
                "Content-Type": "application/vnd.openxmlformats-officedocument.wordprocessingml.document; q=1",
            },
        )
    )

    resolved = ContentResolver(session=session).resolve("https://files.example.com/download?id=7")

    assert resolved.filename == "Quarterly.docx"
    assert resolved.content_type.endswith("wordprocessingml.document")
    assert resolved.data == b"body"
    assert session.urls == ["https://files.example.com/download?id=7"]


def test_http_failure_is_not_found():
    session = StubSession(error=requests.exceptions.ConnectionError("refused"))

    with pytest.raises(AttachmentNotFound):
        ContentResolver(session=session).resolve("http://files.example.com/a.pdf")


def test_unknown_scheme_is_not_found():
    with pytest.raises(AttachmentNotFound):
        ContentResolver(session=StubSession()).resolve("content://media/external/42")


def test_display_name_from_reference():
    resolver = ContentResolver(session=StubSession())

    assert resolver.display_name("/home/user/Report.pdf") == "Report.pdf"
    assert resolver.display_name("https://x.example.com/docs/Spec%20v2.docx") == "Spec v2.docx"
    assert resolver.display_name("https://x.example.com/") is None


def test_malformed_reference_is_not_found():
    resolver = ContentResolver(session=StubSession())

    assert resolver.display_name("http://[bad") is None
    with pytest.raises(AttachmentNotFound):
        resolver.resolve("http://[bad")

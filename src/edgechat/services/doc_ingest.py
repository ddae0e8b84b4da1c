from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Tuple
import io
import logging

from ..domain.errors import AttachmentNotFound, DecodeFailed, IngestionError, UnsupportedFormat
from ..domain.transcript_models import DocumentEntry, WarningEntry
from ..domain.turn_models import GENERIC_ATTACHMENT_LABEL, Attachment
from ..infrastructure.content_resolver import ContentResolver, ResolvedDocument
from ..infrastructure.transcript_store import MessageSink

# Optional imports guarded
try:
    from docx import Document  # type: ignore
except Exception:  # pragma: no cover
    Document = None  # type: ignore

try:
    from pypdf import PdfReader  # type: ignore
except Exception:  # pragma: no cover
    PdfReader = None  # type: ignore


logger = logging.getLogger("edgechat.ingest")

PDF_CONTENT_TYPE = "application/pdf"
DOCX_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"

Decoder = Callable[[bytes, str], str]


def decode_pdf(data: bytes, filename: str) -> str:
    if PdfReader is None:
        raise UnsupportedFormat("PDF support is not installed (pypdf)", filename)
    try:
        reader = PdfReader(io.BytesIO(data))
        texts: List[str] = []
        for page in reader.pages:
            t = page.extract_text() or ''
            if t:
                texts.append(t)
        return '\n'.join(texts)
    except Exception as exc:
        raise DecodeFailed(str(exc) or exc.__class__.__name__, filename, decoder="pdf") from exc


def decode_docx(data: bytes, filename: str) -> str:
    if Document is None:
        raise UnsupportedFormat("DOCX support is not installed (python-docx)", filename)
    try:
        doc = Document(io.BytesIO(data))
        paragraphs = [p.text for p in doc.paragraphs if p.text and p.text.strip()]
        return '\n'.join(paragraphs)
    except Exception as exc:
        raise DecodeFailed(str(exc) or exc.__class__.__name__, filename, decoder="docx") from exc


def decode_text(data: bytes, filename: str) -> str:
    return data.decode('utf-8', errors='replace')


class DecoderRegistry:
    """Content-type match first, then filename suffix, then the generic text decoder."""

    def __init__(self, fallback: Decoder = decode_text) -> None:
        self._by_type: Dict[str, Tuple[str, Decoder]] = {}
        self._by_suffix: Dict[str, Tuple[str, Decoder]] = {}
        self._fallback = ("text", fallback)

    def register(
        self,
        name: str,
        decoder: Decoder,
        content_types: Iterable[str] = (),
        suffixes: Iterable[str] = (),
    ) -> None:
        for ct in content_types:
            self._by_type[ct.strip().lower()] = (name, decoder)
        for suffix in suffixes:
            suffix = suffix.strip().lower()
            if not suffix.startswith('.'):
                suffix = '.' + suffix
            self._by_suffix[suffix] = (name, decoder)

    def select(self, content_type: Optional[str], filename: str) -> Tuple[str, Decoder]:
        if content_type:
            hit = self._by_type.get(content_type.split(';')[0].strip().lower())
            if hit:
                return hit
        name = (filename or '').lower()
        for suffix, hit in self._by_suffix.items():
            if name.endswith(suffix):
                return hit
        return self._fallback


def default_registry() -> DecoderRegistry:
    registry = DecoderRegistry()
    registry.register("pdf", decode_pdf, content_types=[PDF_CONTENT_TYPE], suffixes=[".pdf"])
    registry.register("docx", decode_docx, content_types=[DOCX_CONTENT_TYPE], suffixes=[".docx"])
    return registry


@dataclass(frozen=True)
class IngestResult:
    attachment: Attachment
    prompt: str


class DocumentIngestor:
    def __init__(
        self,
        sink: MessageSink,
        resolver: Optional[ContentResolver] = None,
        registry: Optional[DecoderRegistry] = None,
    ) -> None:
        self._sink = sink
        self._resolver = resolver or ContentResolver()
        self._registry = registry or default_registry()

    def decode(self, data: bytes, content_type: Optional[str], filename: str) -> str:
        name, decoder = self._registry.select(content_type, filename)
        logger.debug("document_decode", extra={"decoder": name, "doc_filename": filename, "content_type": content_type})
        try:
            return decoder(data, filename)
        except IngestionError:
            raise
        except Exception as exc:
            raise DecodeFailed(str(exc) or exc.__class__.__name__, filename, decoder=name) from exc

    def ingest(self, model_name: str, ref: str, user_text: str, accelerator: str = "") -> IngestResult:
        """Surface the attachment in the transcript, then fold its text into the prompt.

        The document entry goes in before any read so the attachment stays
        visible when decoding fails. Failures add one warning and leave the
        prompt as the user's text.
        """

        filename = self._display_name(ref)
        attachment = Attachment(ref=ref, filename=filename)
        self._sink.append(
            model_name,
            DocumentEntry(filename=filename, uri=ref, side="user", accelerator=accelerator),
        )

        try:
            resolved = self._resolve(ref, filename)
            text = self.decode(resolved.data, resolved.content_type, resolved.filename or filename)
        except IngestionError as exc:
            logger.error(
                "document_ingest_failed",
                extra={"model": model_name, "doc_filename": filename, "err": str(exc)},
            )
            self._sink.append(model_name, WarningEntry(content=_warning_text(exc, filename)))
            return IngestResult(attachment=attachment.failed(str(exc)), prompt=user_text)

        logger.debug("document_text_extracted", extra={"model": model_name, "doc_filename": filename, "chars": len(text)})
        return IngestResult(attachment=attachment.decoded(text), prompt=f"{text}\n\n{user_text}")

    def _display_name(self, ref: str) -> str:
        try:
            return self._resolver.display_name(ref) or GENERIC_ATTACHMENT_LABEL
        except Exception as exc:
            logger.debug("document_name_unavailable", extra={"ref": ref, "err": str(exc)})
            return GENERIC_ATTACHMENT_LABEL

    def _resolve(self, ref: str, filename: str) -> ResolvedDocument:
        try:
            return self._resolver.resolve(ref)
        except IngestionError:
            raise
        except Exception as exc:
            raise AttachmentNotFound(str(exc) or exc.__class__.__name__, filename) from exc


def _warning_text(exc: IngestionError, filename: str) -> str:
    if isinstance(exc, DecodeFailed) and exc.decoder == "pdf":
        return f"Failed to extract text from PDF: {filename}. {exc}"
    return f"Failed to read content from {filename}. {exc}"

"""
Email content extraction.

Flattens a Gmail message's MIME part tree into one normalized text blob:
plain-text parts as-is, HTML parts with tags stripped, and PDF attachments
fetched out-of-band and converted to text.

Usage:
    from callbot.agent.extract import extract_content
    text = await extract_content(message, gmail.get_attachment)
"""

import io
import logging
import re
from collections import deque
from typing import Awaitable, Callable

from pypdf import PdfReader

from callbot.agent.schemas import EmailMessage, MessagePart
from callbot.google.gmail import decode_base64url

logger = logging.getLogger(__name__)

# Permissive tag matcher, not an HTML parser. Entities and malformed markup
# pass through untouched.
HTML_TAG_PATTERN = re.compile(r"<[^>]*>?")
WHITESPACE_PATTERN = re.compile(r"\s+")

DOCUMENT_SUFFIXES = (".pdf",)

AttachmentFetcher = Callable[[str, str], Awaitable[bytes]]


def strip_html(html: str) -> str:
    return HTML_TAG_PATTERN.sub(" ", html)


def collapse_whitespace(text: str) -> str:
    return WHITESPACE_PATTERN.sub(" ", text).strip()


def is_document_attachment(part: MessagePart) -> bool:
    return bool(part.filename) and part.filename.lower().endswith(DOCUMENT_SUFFIXES)


def pdf_to_text(data: bytes) -> str:
    """Extract the text layer of a PDF document."""
    reader = PdfReader(io.BytesIO(data))
    return "\n".join(page.extract_text() or "" for page in reader.pages)


def _decode_body(part: MessagePart) -> str:
    return decode_base64url(part.data).decode("utf-8", errors="replace")


async def _document_text(message_id: str, part: MessagePart, fetch_attachment: AttachmentFetcher) -> str:
    try:
        data = await fetch_attachment(message_id, part.attachment_id)
        text = pdf_to_text(data)
    except Exception as e:
        logger.warning(
            "extract.attachment.failed",
            extra={
                "action": "extract.attachment.failed",
                "email_id": message_id,
                "error_type": type(e).__name__,
                "error": str(e),
            },
        )
        return f"\n\n[Could not parse PDF: {part.filename}]\n\n"

    return (
        f"\n\n--- Start of PDF Content: {part.filename} ---\n"
        f"{text}"
        f"\n--- End of PDF Content: {part.filename} ---\n\n"
    )


async def extract_content(message: EmailMessage, fetch_attachment: AttachmentFetcher) -> str:
    """
    Walk the part tree breadth-first and build a single text blob.

    A failed attachment contributes a placeholder instead of aborting the
    walk. Falls back to the message snippet when no text is found.
    """
    chunks: list[str] = []
    queue: deque[MessagePart] = deque([message.payload])

    while queue:
        part = queue.popleft()

        if part.data and part.mime_type == "text/plain":
            chunks.append(_decode_body(part) + "\n\n")
        elif part.data and part.mime_type == "text/html":
            chunks.append(strip_html(_decode_body(part)) + "\n\n")

        if is_document_attachment(part) and part.attachment_id:
            chunks.append(await _document_text(message.id, part, fetch_attachment))

        queue.extend(part.parts)

    combined = "".join(chunks)
    if not combined:
        combined = message.snippet

    return collapse_whitespace(combined)

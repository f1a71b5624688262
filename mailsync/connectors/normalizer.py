"""Raw message normalization.

This module converts raw RFC 822 bytes into the canonical
:class:`~mailsync.core.models.EmailObject`. Parsing is shared by every
connector so messages look identical whichever provider delivered them.
"""

from __future__ import annotations

import base64
import logging
import quopri
from datetime import datetime, timezone
from email import message_from_bytes
from email.header import decode_header, make_header
from email.message import Message
from email.utils import getaddresses, parsedate_to_datetime
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from bs4 import BeautifulSoup

from ..core.exceptions import NormalizationError
from ..core.models import Attachment, EmailAddress, EmailObject, HeaderValue

logger = logging.getLogger(__name__)

DEFAULT_ATTACHMENT_NAME = "untitled"


def decode_header_value(raw_val: Optional[str]) -> Optional[str]:
    """Decode an RFC 2047 encoded header into text."""
    if not raw_val:
        return None
    try:
        return str(make_header(decode_header(raw_val))).strip()
    except Exception:
        parts = decode_header(raw_val)
        decoded: List[str] = []
        for text, enc in parts:
            if isinstance(text, bytes):
                try:
                    decoded.append(text.decode(enc or "utf-8", errors="ignore"))
                except LookupError:
                    decoded.append(text.decode("utf-8", errors="ignore"))
            else:
                decoded.append(text)
        return "".join(decoded).strip()


def decode_part(part: Message) -> Optional[str]:
    """Return the decoded text payload of a MIME part."""
    charset = part.get_content_charset() or "utf-8"
    payload = part.get_payload(decode=True)
    if not payload:
        return None
    try:
        return payload.decode(charset, errors="ignore")
    except LookupError:
        try:
            return quopri.decodestring(payload).decode("utf-8", errors="ignore")
        except ValueError:
            try:
                return base64.b64decode(payload).decode("utf-8", errors="ignore")
            except ValueError:
                return payload.decode("utf-8", errors="ignore")


def _strip_id(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    stripped = value.strip().strip("<>").strip()
    return stripped or None


def parse_references(raw: Optional[str]) -> List[str]:
    """Split a References header into bare message ids, oldest first."""
    if not raw:
        return []
    return [ref.strip("<> ") for ref in raw.split() if "@" in ref]


def derive_thread_id(
    native_thread_id: Optional[str],
    message_id: Optional[str],
    in_reply_to: Optional[str],
    references: Sequence[str],
    fallback: str = "",
) -> str:
    """Pick the thread identifier for a message.

    A provider-native thread id always wins. Otherwise the root of the
    References chain is used, then In-Reply-To, then the message's own
    Message-ID, so a thread started by message X and every reply to X agree.
    """
    if native_thread_id:
        return native_thread_id
    if references:
        return references[0]
    return _strip_id(in_reply_to) or _strip_id(message_id) or fallback


def map_addresses(values: Iterable[str]) -> Tuple[EmailAddress, ...]:
    """Flatten every occurrence of an address header into one ordered sequence."""
    result: List[EmailAddress] = []
    for name, address in getaddresses([v for v in values if v]):
        if not name and not address:
            continue
        result.append(
            EmailAddress(name=decode_header_value(name) or "", address=address or "")
        )
    return tuple(result)


def collect_headers(msg: Message) -> Dict[str, HeaderValue]:
    """Header map keyed by lower-cased name; repeated headers become lists."""
    headers: Dict[str, HeaderValue] = {}
    for key, value in msg.items():
        name = key.lower()
        decoded = decode_header_value(str(value)) or ""
        existing = headers.get(name)
        if existing is None:
            headers[name] = decoded
        elif isinstance(existing, list):
            existing.append(decoded)
        else:
            headers[name] = [existing, decoded]
    return headers


def parse_date(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    try:
        dt = parsedate_to_datetime(raw)
    except (TypeError, ValueError, IndexError):
        return None
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _extract_bodies(msg: Message) -> Tuple[str, str, List[Attachment]]:
    body_text: Optional[str] = None
    body_html: Optional[str] = None
    attachments: List[Attachment] = []

    for part in msg.walk():
        if part.is_multipart():
            continue
        ctype = part.get_content_type()
        disp = (part.get("Content-Disposition") or "").lower()
        filename = part.get_filename()
        is_attachment = "attachment" in disp or bool(filename)
        if ctype == "text/plain" and not is_attachment and body_text is None:
            body_text = decode_part(part)
        elif ctype == "text/html" and not is_attachment and body_html is None:
            body_html = decode_part(part)
        elif is_attachment or (msg.is_multipart() and not ctype.startswith("text/")):
            payload = part.get_payload(decode=True) or b""
            attachments.append(
                Attachment(
                    filename=decode_header_value(filename) or DEFAULT_ATTACHMENT_NAME,
                    content_type=ctype,
                    size=len(payload),
                    content=payload,
                )
            )

    if not body_text and body_html:
        body_text = BeautifulSoup(body_html, "html.parser").get_text()
    return body_text or "", body_html or "", attachments


def normalize_message(
    raw: bytes,
    *,
    message_id: str,
    user_email: str,
    native_thread_id: Optional[str] = None,
    path: str = "",
    tags: Sequence[str] = (),
    fallback_received_at: Optional[datetime] = None,
    fallback_subject: str = "",
) -> EmailObject:
    """Parse ``raw`` into an :class:`EmailObject`.

    Parameters
    ----------
    raw:
        RFC 822 bytes as delivered by the provider.
    message_id:
        Provider-native id; also the thread id of last resort.
    native_thread_id:
        Provider thread id, preferred over header-derived threading.
    path, tags:
        Folder path and labels already resolved by the connector.
    fallback_received_at, fallback_subject:
        Provider metadata used when the headers lack a date or subject.

    Raises
    ------
    NormalizationError
        If ``raw`` is empty or cannot be parsed.
    """
    if not raw:
        raise NormalizationError(f"Message {message_id} has no content")
    try:
        msg = message_from_bytes(raw)
        headers = collect_headers(msg)
        body, html, attachments = _extract_bodies(msg)
    except (ValueError, TypeError, LookupError, AttributeError) as exc:
        raise NormalizationError(f"Failed to parse message {message_id}: {exc}") from exc

    thread_id = derive_thread_id(
        native_thread_id,
        msg.get("Message-ID"),
        msg.get("In-Reply-To"),
        parse_references(msg.get("References")),
        fallback=message_id,
    )

    return EmailObject(
        id=message_id,
        thread_id=thread_id,
        user_email=user_email,
        eml=raw,
        from_addrs=map_addresses(msg.get_all("From") or []),
        to_addrs=map_addresses(msg.get_all("To") or []),
        cc_addrs=map_addresses(msg.get_all("Cc") or []),
        bcc_addrs=map_addresses(msg.get_all("Bcc") or []),
        subject=decode_header_value(msg.get("Subject")) or fallback_subject or "",
        body=body,
        html=html,
        headers=headers,
        attachments=tuple(attachments),
        received_at=parse_date(msg.get("Date")) or fallback_received_at or datetime.now(timezone.utc),
        path=path,
        tags=tuple(tags),
    )

"""
Core data models for mail synchronization.

This module contains the dataclasses emitted by connectors and exchanged
with storage collaborators. ``EmailObject`` is the canonical unit every
connector yields regardless of provider.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

HeaderValue = Union[str, List[str]]


class SourceStatus(str, Enum):
    """Coarse lifecycle status of an ingestion source."""

    PENDING_AUTH = "pending_auth"
    AUTH_SUCCESS = "auth_success"
    IMPORTING = "importing"
    SYNCING = "syncing"
    ACTIVE = "active"
    PAUSED = "paused"
    ERROR = "error"


@dataclass(frozen=True)
class EmailAddress:
    """
    A single mailbox address.

    Attributes:
        name: Display name, empty when the header carried none
        address: Bare address, empty when unparseable
    """
    name: str
    address: str


@dataclass(frozen=True)
class Attachment:
    """
    Attachment materialized from a raw message.

    Attributes:
        filename: Decoded filename, ``untitled`` when the part had none
        content_type: MIME type of the part
        size: Size of the decoded content in bytes
        content: Decoded content bytes
    """
    filename: str
    content_type: str
    size: int
    content: bytes = field(repr=False)


@dataclass(frozen=True)
class EmailObject:
    """
    Canonical, immutable representation of one fetched message.

    Attributes:
        id: Provider-native message id, unique per source and provider
        thread_id: Native thread id, or one derived from threading headers
        user_email: Address of the mailbox owner
        eml: Raw RFC 822 bytes
        from_addrs: Sender addresses
        to_addrs: Primary recipients
        cc_addrs: Carbon-copy recipients
        bcc_addrs: Blind carbon-copy recipients
        subject: Decoded subject
        body: Plain-text body
        html: HTML body
        headers: Raw header map, repeated headers collected into lists
        attachments: Attachments in message order
        received_at: Timestamp from the Date header or the provider
        path: Folder path, may be empty
        tags: Provider labels or mailbox paths
    """
    id: str
    thread_id: str
    user_email: str
    eml: bytes = field(repr=False)
    from_addrs: Tuple[EmailAddress, ...] = ()
    to_addrs: Tuple[EmailAddress, ...] = ()
    cc_addrs: Tuple[EmailAddress, ...] = ()
    bcc_addrs: Tuple[EmailAddress, ...] = ()
    subject: str = ""
    body: str = ""
    html: str = ""
    headers: Dict[str, HeaderValue] = field(default_factory=dict, repr=False)
    attachments: Tuple[Attachment, ...] = field(default=(), repr=False)
    received_at: Optional[datetime] = None
    path: str = ""
    tags: Tuple[str, ...] = ()


@dataclass(frozen=True)
class MailboxUser:
    """A mailbox reachable with a source's credentials."""
    id: str
    primary_email: str
    display_name: str


@dataclass
class SourceRecord:
    """
    Stored configuration of an ingestion source.

    Attributes:
        source_id: Identifier of the source
        provider: Provider family (``gmail``, ``jmap``, ``imap``)
        credentials: Encrypted credential payload, ``None`` until authorized
        status: Current lifecycle status
        sync_state: Last committed sync state document
        last_status_message: Free-text diagnosis of the last cycle
        updated_at: Time of the last write
    """
    source_id: str
    provider: str
    credentials: Optional[str] = None
    status: SourceStatus = SourceStatus.PENDING_AUTH
    sync_state: Dict[str, Any] = field(default_factory=dict)
    last_status_message: Optional[str] = None
    updated_at: Optional[datetime] = None

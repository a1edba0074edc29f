"""Content source protocol, record types, and content preparation for embedding.

The host owns the parent/member schema; this module only describes the
narrow read interface (plus one marker field per parent and mode) that the
indexer needs, and turns a member into the text that gets embedded.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from bs4 import BeautifulSoup

from threadindex.search.types import ImageRef

if TYPE_CHECKING:
    from threadindex.types import IndexMode, StatusBreakdown

# Bracket shortcodes such as [attach]12[/attach] or [quote data-userid="3"].
_SHORTCODE_RE = re.compile(r"\[(?:\/)?[a-zA-Z0-9_-]+(?:\s[^\]]*?)?\]")
_WHITESPACE_RE = re.compile(r"\s+")

DEFAULT_MAX_CONTENT_CHARS = 45_000
DEFAULT_PREVIEW_CHARS = 510


# ------------------------------------------------------------------
# Records
# ------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class IndexedStatusMarker:
    """Indexed flag plus change-detection hash stored on a parent, per mode.

    Attributes:
        indexed: Whether the parent is represented in that mode's backend.
        change_hash: :func:`marker_hash` of the parent when it was indexed.
    """

    indexed: bool
    change_hash: str = ""

    def is_current(self, parent: ParentRecord) -> bool:
        """True if the parent is indexed and unchanged since it was marked."""
        return self.indexed and self.change_hash == marker_hash(parent)


@dataclass(frozen=True, slots=True)
class ParentRecord:
    """A thread as seen by the indexer.

    Attributes:
        id: Parent id.
        partition_id: Partition (forum) the parent lives in.
        title: Thread title.
        url: Public URL of the thread.
        owner_id: Author of the thread.
        tags: Thread tags.
        private: Private threads are never indexed.
        approved: Unapproved threads are never indexed.
        member_count: Number of members; part of the change-detection hash.
        created_at: Creation time, if known.
        markers: Indexed status per mode value (``"local"`` / ``"cloud"``).
    """

    id: int
    partition_id: int
    title: str
    url: str = ""
    owner_id: int = 0
    tags: tuple[str, ...] = ()
    private: bool = False
    approved: bool = True
    member_count: int = 0
    created_at: datetime | None = None
    markers: dict[str, IndexedStatusMarker] = field(default_factory=dict)

    @property
    def eligible(self) -> bool:
        """Public and approved."""
        return self.approved and not self.private

    def marker(self, mode: IndexMode | str) -> IndexedStatusMarker | None:
        """Marker for *mode*, if one was written."""
        key = mode if isinstance(mode, str) else mode.value
        return self.markers.get(key)


@dataclass(frozen=True, slots=True)
class MemberRecord:
    """A reply (or the opening post) of a thread.

    Attributes:
        id: Content id.
        parent_id: Thread the member belongs to.
        owner_id: Author id.
        body: Raw body (HTML and shortcodes allowed).
        created_at: Creation time, if known.
        url: Permalink.
        author_name: Display name of the author.
        images: Attached images; when empty, ``<img>`` tags in the body are used.
        private: Private members are never indexed.
        approved: Unapproved members are never indexed.
        is_first: True for the opening post of the thread.
    """

    id: int
    parent_id: int
    owner_id: int = 0
    body: str = ""
    created_at: datetime | None = None
    url: str = ""
    author_name: str = ""
    images: tuple[ImageRef, ...] = ()
    private: bool = False
    approved: bool = True
    is_first: bool = False

    @property
    def eligible(self) -> bool:
        """Public and approved."""
        return self.approved and not self.private


# ------------------------------------------------------------------
# Protocol
# ------------------------------------------------------------------


@runtime_checkable
class ContentSource(Protocol):
    """Host-provided access to parents and members.

    Reads are unrestricted; the only write is the per-mode indexed marker.
    """

    async def get_parent(self, parent_id: int) -> ParentRecord | None:
        """Return the parent, or None if it does not exist."""
        ...

    async def get_members(self, parent_id: int) -> list[MemberRecord]:
        """Return the parent's members in creation order."""
        ...

    async def get_member(self, content_id: int) -> MemberRecord | None:
        """Return one member, or None if it does not exist."""
        ...

    async def list_parent_ids(
        self,
        partition_id: int,
        *,
        mode: IndexMode,
        indexed: bool | None = None,
        limit: int | None = None,
    ) -> list[int]:
        """Eligible parent ids in *partition_id*, optionally by marker state, oldest first."""
        ...

    async def status_breakdown(self, partition_id: int, mode: IndexMode) -> StatusBreakdown:
        """Counts of parents by indexing status for *mode*."""
        ...

    async def count_members(self, partition_id: int) -> int:
        """Number of eligible members in *partition_id*."""
        ...

    async def set_marker(
        self,
        parent_id: int,
        mode: IndexMode,
        marker: IndexedStatusMarker | None,
    ) -> None:
        """Write (or clear, with None) the parent's marker for *mode*."""
        ...


# ------------------------------------------------------------------
# Preparation
# ------------------------------------------------------------------


def strip_markup(text: str) -> str:
    """Remove shortcodes and HTML, decode entities, and collapse whitespace."""
    if not text:
        return ""
    text = _SHORTCODE_RE.sub("", text)
    soup = BeautifulSoup(text, "html.parser")
    for element in soup(["script", "style"]):
        element.decompose()
    text = soup.get_text(separator=" ")
    return _WHITESPACE_RE.sub(" ", text).strip()


def prepare_content(
    member: MemberRecord,
    parent: ParentRecord,
    *,
    max_chars: int = DEFAULT_MAX_CONTENT_CHARS,
) -> str:
    """Build the text embedded for *member*.

    The opening post is framed with the thread title (before and after the
    body, to weight it) and the thread tags.  Replies are the cleaned body
    alone.
    """
    parts: list[str] = []
    if member.is_first and parent.title:
        parts.append(f"Topic: {parent.title}")

    parts.append(strip_markup(member.body))

    if member.is_first and parent.tags:
        parts.append("Tags: " + ", ".join(parent.tags))
    if member.is_first and parent.title:
        parts.append(f"Topic: {parent.title}")

    result = "\n\n".join(part for part in parts if part)
    return result[:max_chars]


def extract_images(member: MemberRecord) -> tuple[ImageRef, ...]:
    """Images attached to *member*, falling back to ``<img>`` tags in its body."""
    if member.images:
        return member.images
    if "<img" not in member.body:
        return ()
    soup = BeautifulSoup(member.body, "html.parser")
    found: list[ImageRef] = []
    for tag in soup.find_all("img"):
        src = tag.get("src")
        if isinstance(src, str) and src.startswith(("http://", "https://")):
            alt = tag.get("alt")
            found.append(ImageRef(url=src, alt=alt if isinstance(alt, str) else ""))
    return tuple(found)


def fingerprint(text: str, image_count: int = 0) -> str:
    """Digest of prepared text plus the attached-image count.

    Adding or removing an image changes the fingerprint even when the text
    does not, which forces a re-embed.
    """
    payload = f"{text}|images:{image_count}"
    return hashlib.sha256(payload.encode()).hexdigest()


def marker_hash(parent: ParentRecord) -> str:
    """Change-detection hash for a parent's indexed marker."""
    return hashlib.sha256(f"{parent.id}_{parent.member_count}".encode()).hexdigest()


def make_preview(text: str, max_chars: int = DEFAULT_PREVIEW_CHARS) -> str:
    """Plain-text preview stored next to a vector."""
    return strip_markup(text)[:max_chars]

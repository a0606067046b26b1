from typing import Iterable, List, Optional, Set

from .journal import jump_url
from .models import Attachment, Candidate, CandidateKind, SourceItem

TEXT_ATTACHMENT_URL = "about:text"


def compare_ids(a: str, b: str) -> int:
    """Order numeric-string ids: shorter is smaller, equal lengths compare as text."""
    if len(a) != len(b):
        return -1 if len(a) < len(b) else 1
    if a == b:
        return 0
    return -1 if a < b else 1


def id_sort_key(item_id: str):
    return (len(item_id), item_id)


def sort_items(items: Iterable[SourceItem]) -> List[SourceItem]:
    return sorted(items, key=lambda it: id_sort_key(it.id))


def max_item_id(items: Iterable[SourceItem], floor: Optional[str] = None) -> Optional[str]:
    """Highest id among `items` and `floor` (the previous cursor)."""
    best = floor or None
    for it in items:
        if best is None or compare_ids(it.id, best) > 0:
            best = it.id
    return best


def fallback_group_id(items: Iterable[SourceItem]) -> str:
    for it in items:
        if it.guild_id.strip():
            return it.guild_id
    return ""


def text_attachment(item_id: str) -> Attachment:
    return Attachment(
        id=f"text-{item_id}",
        url=TEXT_ATTACHMENT_URL,
        filename="message.txt",
        content_type="text/plain",
    )


def _classify(item: SourceItem):
    for att in item.attachments:
        if att.is_audio:
            return CandidateKind.AUDIO, att
    if item.text.strip():
        return CandidateKind.TEXT, text_attachment(item.id)
    return None, None


def select_candidates(items: Iterable[SourceItem], allowed_author_ids: Set[str]) -> List[Candidate]:
    """
    Oldest-first candidates from raw items: allowed authors only, first audio
    attachment wins, otherwise non-blank text; everything else is dropped.
    """
    out = []
    for item in sort_items(items):
        if item.author_id not in allowed_author_ids:
            continue
        kind, att = _classify(item)
        if kind is None:
            continue
        link = jump_url(item.guild_id, item.channel_id, item.id) if item.guild_id else ""
        out.append(Candidate(item=item, attachment=att, kind=kind, jump_url=link))
    return out

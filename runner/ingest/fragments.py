"""Splitting digest-style feed items into topic fragments.

Some feeds publish one post per day that bundles many short, unrelated
moments. Each moment becomes its own entry, identified by the parent item id
plus a short hash of its HTML. Re-fetches are kept idempotent by a per-item
content hash stored on the source, and fragments whose HTML changed slightly
are updated in place by a title-similarity match instead of being duplicated.
"""
import hashlib
import json
import sys
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup, Tag

from backend.llm.client import extract_json_block
from backend.models import (
    FRAGMENT_MARKER,
    Entry,
    ExistingFragmentEntry,
    Source,
    utc_now,
)
from .extract import content_hash
from .rss_ingest import FeedItem

FRAGMENT_SIMILARITY_THRESHOLD = 0.6
TITLE_MAX_CHARS = 120
PREVIEW_CHARS = 300

# every other block-level child (quotes, lists, pre) joins the current fragment
_STARTS_FRAGMENT = "p"
_DROPPED = "hr"

_GROUPING_SYSTEM = (
    "You group content blocks into coherent fragments. Always respond with valid JSON."
)
_GROUPING_PROMPT = (
    "These numbered blocks are extracted from a blog post that contains multiple "
    "short topics/moments. Group consecutive blocks that belong to the same topic "
    "into fragments. A commentary paragraph about a preceding quote belongs with "
    "that quote.\n\n{preview}\n"
    'Return JSON only: {{"groups": [[0, 1], [2], ...]}}'
)


@dataclass
class Fragment:
    html: str
    title: str


def _collapse(text: str) -> str:
    return " ".join((text or "").split())


def html_text(html: str) -> str:
    return _collapse(BeautifulSoup(html or "", "html.parser").get_text(" "))


def make_fragment(html: str) -> Fragment:
    title = html_text(html)
    if len(title) > TITLE_MAX_CHARS:
        title = title[:TITLE_MAX_CHARS] + "…"
    return Fragment(html=(html or "").strip(), title=title)


def split_fragments(html: str) -> list[Fragment]:
    soup = BeautifulSoup(html or "", "html.parser")
    root = soup.body or soup
    fragments = []
    current: list[str] = []
    for child in root.children:
        if not isinstance(child, Tag):
            continue
        if child.name == _DROPPED:
            continue
        if child.name == _STARTS_FRAGMENT and current:
            fragments.append(make_fragment("".join(current)))
            current = []
        current.append(str(child))
    if current:
        fragments.append(make_fragment("".join(current)))
    return fragments


def parse_fragment_groups(response: str, count: int) -> list[list[int]]:
    try:
        data = json.loads(extract_json_block(response))
    except ValueError as e:
        raise ValueError(f"invalid JSON {response[:200]!r}: {e}") from e
    if not isinstance(data, dict):
        raise ValueError("response is not a JSON object")
    groups = data.get("groups")
    if not isinstance(groups, list) or not groups:
        raise ValueError("empty groups")
    for group in groups:
        if not isinstance(group, list) or not group:
            raise ValueError("empty group in response")
        for idx in group:
            if isinstance(idx, bool) or not isinstance(idx, int):
                raise ValueError(f"non-integer index {idx!r}")
            if idx < 0 or idx >= count:
                raise ValueError(f"index {idx} out of range [0, {count})")
    return groups


def merge_fragments(initial: list[Fragment], groups: list[list[int]]) -> list[Fragment]:
    return [make_fragment("\n".join(initial[idx].html for idx in group)) for group in groups]


def build_grouping_messages(fragments: list[Fragment]) -> list[dict]:
    lines = []
    for i, frag in enumerate(fragments):
        text = html_text(frag.html)
        if len(text) > PREVIEW_CHARS:
            text = text[:PREVIEW_CHARS] + "..."
        lines.append(f"[{i}] {text}")
    prompt = _GROUPING_PROMPT.format(preview="\n".join(lines))
    return [
        {"role": "system", "content": _GROUPING_SYSTEM},
        {"role": "user", "content": prompt},
    ]


def split_fragments_with_ai(html: str, complete) -> list[Fragment]:
    """Heuristic split, then let the model merge consecutive blocks.

    Any failure of the model call or of its answer returns the heuristic
    split unchanged.
    """
    initial = split_fragments(html)
    if len(initial) <= 1:
        return initial

    try:
        response = complete(build_grouping_messages(initial))
    except Exception as e:
        print(f"FRAGMENT_GROUPING_FALLBACK reason=request err={str(e)[:200]}")
        return initial

    try:
        groups = parse_fragment_groups(response or "", len(initial))
    except ValueError as e:
        print(f"FRAGMENT_GROUPING_FALLBACK reason=parse err={str(e)[:200]}")
        return initial
    return merge_fragments(initial, groups)


def fragment_guid(parent_guid: str, fragment_html: str) -> str:
    digest = hashlib.sha256(fragment_html.encode("utf-8")).digest()
    return f"{parent_guid}{FRAGMENT_MARKER}{digest[:6].hex()}"


def title_words(title: str) -> set[str]:
    words = set()
    for word in (title or "").lower().split():
        word = word.rstrip(".,;:!?\"'")
        if word:
            words.add(word)
    return words


def title_similarity(a: str, b: str) -> float:
    words_a = title_words(a)
    words_b = title_words(b)
    if not words_a and not words_b:
        return 1.0
    if not words_a or not words_b:
        return 0.0
    return len(words_a & words_b) / len(words_a | words_b)


def _resolve(base_url: str, value: str) -> str | None:
    try:
        resolved = urljoin(base_url, value.strip())
    except ValueError:
        return None
    if urlparse(resolved).scheme not in ("http", "https"):
        return None
    return resolved


def resolve_content_links(html: str, base_url: str) -> str:
    if not html or not base_url or urlparse(base_url).scheme not in ("http", "https"):
        return html
    soup = BeautifulSoup(html, "html.parser")
    for attr in ("href", "src"):
        for tag in soup.find_all(attrs={attr: True}):
            resolved = _resolve(base_url, tag[attr])
            if resolved:
                tag[attr] = resolved
    root = soup.body or soup
    return root.decode_contents().strip()


def _utc_date(value: datetime):
    return value.astimezone(timezone.utc).date()


def fragment_published_at(
    parent_published: datetime | None,
    last_checked: datetime | None,
    now: datetime,
) -> datetime:
    if parent_published is None:
        return now
    if last_checked is None:
        return parent_published

    today = _utc_date(now)
    day = _utc_date(parent_published)
    if day == today:
        return now
    if day == today - timedelta(days=1):
        # added some time between the last check and midnight
        return last_checked
    return parent_published


def find_similar_fragment(
    existing: list[ExistingFragmentEntry],
    title: str,
    published_at: datetime | None,
) -> ExistingFragmentEntry | None:
    if published_at is None:
        return None
    target = _utc_date(published_at)
    best = None
    best_score = 0.0
    for candidate in existing:
        if candidate.published_at is None or _utc_date(candidate.published_at) != target:
            continue
        score = title_similarity(candidate.title, title)
        if score >= FRAGMENT_SIMILARITY_THRESHOLD and score > best_score:
            best = candidate
            best_score = score
    return best


class FragmentSession:
    """Per-source state for one fetch cycle of a fragment feed.

    Loads existing fragment ids and titles once, processes feed items one by
    one, and writes the changed content hashes back in flush().
    """

    def __init__(self, store, source: Source, create_entry, complete=None, now: datetime | None = None):
        self.store = store
        self.source = source
        self.create_entry = create_entry
        self.complete = complete
        self.now = now or utc_now()
        self.last_checked = source.last_checked_at
        self.hashes = dict(source.fragment_content_hashes or {})
        self.hashes_changed = False
        self.existing_guids = set(store.list_entry_guids(source.id))
        # fragments stored before this cycle; fragments created during it are
        # never similarity candidates, so sibling topics cannot overwrite each other
        self.existing = store.list_fragment_entries(source.id)
        # existing entries already updated this cycle
        self.claimed: set[str] = set()
        self.created = 0
        self.updated = 0

    def _split(self, html: str) -> list[Fragment]:
        if self.complete is None:
            return split_fragments(html)
        return split_fragments_with_ai(html, self.complete)

    def _update_similar(self, similar: ExistingFragmentEntry, frag: Fragment, guid: str) -> None:
        entry = self.store.get_entry(similar.id)
        if entry is None:
            print(f"FRAGMENT_UPDATE_MISSING entry={similar.id}", file=sys.stderr)
            return
        entry.title = frag.title
        entry.guid = guid
        entry.raw_content = frag.html
        self.store.save_entry(entry)
        similar.title = frag.title
        self.updated += 1
        print(f"FRAGMENT_UPDATED entry={entry.id} guid={guid}")

    def process_item(self, item: FeedItem) -> None:
        html = resolve_content_links(item.content, item.url)
        digest = content_hash(html)
        if self.hashes.get(item.guid) == digest:
            return
        self.hashes[item.guid] = digest
        self.hashes_changed = True

        for frag in self._split(html):
            guid = fragment_guid(item.guid, frag.html)
            if guid in self.existing_guids:
                continue
            published = fragment_published_at(item.published_at, self.last_checked, self.now)

            candidates = [e for e in self.existing if e.id not in self.claimed]
            similar = find_similar_fragment(candidates, frag.title, published)
            if similar is not None:
                self.claimed.add(similar.id)
                try:
                    self._update_similar(similar, frag, guid)
                except Exception as e:
                    print(
                        f"FRAGMENT_UPDATE_FAIL entry={similar.id} err={str(e)[:200]}",
                        file=sys.stderr,
                    )
                    continue
                self.existing_guids.add(guid)
                continue

            entry = self.create_entry(
                Entry(
                    source_id=self.source.id,
                    url=item.url,
                    title=frag.title,
                    guid=guid,
                    raw_content=frag.html,
                    is_fragment=True,
                    published_at=published,
                )
            )
            if entry is None:
                continue
            self.created += 1
            self.existing_guids.add(guid)

    def flush(self) -> None:
        if not self.hashes_changed:
            return
        self.source.fragment_content_hashes = dict(self.hashes)
        try:
            saved = self.store.update_source(self.source)
        except Exception as e:
            print(
                f"FRAGMENT_HASHES_SAVE_FAIL source={self.source.id} err={str(e)[:200]}",
                file=sys.stderr,
            )
            return
        if not saved:
            print(f"FRAGMENT_HASHES_SKIPPED source={self.source.id} reason=deleted")
        self.hashes_changed = False

from dataclasses import dataclass
from urllib.parse import urldefrag, urljoin, urlparse

from bs4 import BeautifulSoup

from backend.models import Source

SKIP_PATH_PREFIXES = (
    "/tag",
    "/category",
    "/author",
    "/page/",
    "/wp-content",
    "/wp-admin",
    "/feed",
    "/rss",
    "#",
)


class ScrapeError(Exception):
    pass


@dataclass
class ScrapedLink:
    title: str
    url: str


def resolve_url(base_url: str, href: str | None) -> str | None:
    href = (href or "").strip()
    if not href:
        return None
    lower = href.lower()
    if lower.startswith("mailto:") or lower.startswith("javascript:"):
        return None
    try:
        abs_url = urldefrag(urljoin(base_url, href)).url
        parsed = urlparse(abs_url)
    except ValueError:
        return None
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return None
    return abs_url


def _link_text(el) -> str:
    return " ".join(el.get_text(" ").split())


def extract_link(el, base_url: str) -> ScrapedLink | None:
    href = el.get("href")
    # a selector may match a card or heading; use the first anchor under it
    if not href and el.name != "a":
        anchor = el.select_one("a[href]")
        if anchor is not None:
            href = anchor.get("href")
    resolved = resolve_url(base_url, href)
    if not resolved:
        return None
    return ScrapedLink(title=_link_text(el) or resolved, url=resolved)


def _same_page(link_url: str, page_url: str) -> bool:
    page = urldefrag(page_url).url
    return link_url == page or link_url.rstrip("/") == page.rstrip("/")


def is_article_link(link_url: str, page_url: str) -> bool:
    if _same_page(link_url, page_url):
        return False
    parsed = urlparse(link_url)
    base = urlparse(page_url)
    if parsed.netloc.lower() != base.netloc.lower():
        return False
    path = parsed.path.lower()
    if any(path.startswith(prefix) for prefix in SKIP_PATH_PREFIXES):
        return False
    return len(parsed.path) > 1


def extract_article_links(html: str, page_url: str, selector: str = "") -> list[ScrapedLink]:
    soup = BeautifulSoup(html or "", "html.parser")
    links = []
    if selector:
        try:
            matched = soup.select(selector)
        except Exception as e:
            raise ScrapeError(f"invalid article selector {selector!r}: {e}") from e
        for el in matched:
            link = extract_link(el, page_url)
            if link:
                links.append(link)
        return links

    for a in soup.find_all("a", href=True):
        link = extract_link(a, page_url)
        if link and is_article_link(link.url, page_url):
            links.append(link)
    return links


def dedupe_links(links: list[ScrapedLink], existing_urls: set[str]) -> list[ScrapedLink]:
    seen = set()
    deduped = []
    for link in links:
        if link.url in existing_urls or link.url in seen:
            continue
        seen.add(link.url)
        deduped.append(link)
    return deduped


def scrape_article_links(source: Source, strategy, store) -> list[ScrapedLink]:
    html = strategy.fetch_page_body(source)
    links = extract_article_links(html, source.url, source.article_selector)
    fresh = dedupe_links(links, store.list_entry_urls(source.id))
    print(f"WATCHLIST_SCRAPED source={source.id} links={len(links)} new={len(fresh)}")
    return fresh

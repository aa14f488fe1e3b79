"""Web tab normalization and the active-tab snapshot taken at send time.

The active browser tab is volatile; it is resolved once when a message is
sent and frozen into that message's context, so edits and regenerations
reuse what was active then rather than what is active now.
"""

from typing import Dict, List, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import structlog

from promptlayers.domain.context.collaborators import ActiveWebTabProvider
from promptlayers.domain.models.message import MessageContext, WebTabContext

logger = structlog.get_logger(__name__)

ACTIVE_WEB_TAB_MARKER = "{activeWebTab}"

_DEFAULT_PORTS = {"http": 80, "https": 443}


def normalize_url_string(url: Optional[str]) -> Optional[str]:
    """Trimmed URL, or None when empty. Fragment and query are kept."""

    if not isinstance(url, str):
        return None
    trimmed = url.strip()
    return trimmed or None


def normalize_url_for_matching(url: Optional[str]) -> Optional[str]:
    """Canonical form for deciding whether two URLs are the same page.

    Drops the fragment and default ports, strips trailing slashes except on
    the root path and sorts query parameters. Unparseable input comes back
    trimmed.
    """

    trimmed = normalize_url_string(url)
    if trimmed is None:
        return None

    try:
        parts = urlsplit(trimmed)
        if not parts.scheme or not parts.netloc:
            return trimmed

        scheme = parts.scheme.lower()
        netloc = parts.netloc.lower()
        if parts.port is not None and _DEFAULT_PORTS.get(scheme) == parts.port:
            netloc = netloc.rsplit(":", 1)[0]

        path = parts.path or "/"
        if path != "/":
            path = path.rstrip("/") or "/"

        query = urlencode(sorted(parse_qsl(parts.query, keep_blank_values=True)))
        return urlunsplit((scheme, netloc, path, query, ""))
    except ValueError:
        return trimmed


def _optional(value: Optional[str]) -> Optional[str]:
    return normalize_url_string(value)


def normalize_web_tab_context(tab: WebTabContext) -> Optional[WebTabContext]:
    """Trimmed copy of a tab, or None when it has no URL"""

    url = normalize_url_string(tab.url)
    if url is None:
        return None

    return WebTabContext(
        url=url,
        title=_optional(tab.title),
        favicon_url=_optional(tab.favicon_url),
        is_loaded=tab.is_loaded,
        is_active=True if tab.is_active else None,
    )


def merge_web_tab_contexts(tabs: List[WebTabContext]) -> List[WebTabContext]:
    """Deduplicate tabs by URL.

    First occurrence keeps its position; later duplicates fill in title,
    favicon and load state, and the tab is active if any duplicate was.
    """

    by_url: Dict[str, WebTabContext] = {}
    for tab in tabs:
        normalized = normalize_web_tab_context(tab)
        if normalized is None:
            continue

        existing = by_url.get(normalized.url)
        if existing is None:
            by_url[normalized.url] = normalized
            continue

        by_url[normalized.url] = existing.model_copy(update={
            "title": normalized.title if normalized.title is not None else existing.title,
            "favicon_url": normalized.favicon_url if normalized.favicon_url is not None else existing.favicon_url,
            "is_loaded": normalized.is_loaded if normalized.is_loaded is not None else existing.is_loaded,
            "is_active": True if (existing.is_active or normalized.is_active) else None,
        })

    return list(by_url.values())


def sanitize_web_tab_contexts(tabs: List[WebTabContext]) -> List[WebTabContext]:
    """Merge duplicates and keep at most one active tab"""

    sanitized: List[WebTabContext] = []
    has_active = False
    for tab in merge_web_tab_contexts(tabs):
        if tab.is_active and has_active:
            tab = tab.model_copy(update={"is_active": None})
        elif tab.is_active:
            has_active = True
        sanitized.append(tab)
    return sanitized


def has_web_selection(context: Optional[MessageContext]) -> bool:
    """Whether the turn already carries text selected from a web page"""

    if context is None:
        return False
    return any(selection.source_type == "web" for selection in context.selected_text_contexts)


def build_web_tabs_with_active_snapshot(
    display_text: str,
    context: Optional[MessageContext],
    include_active_web_tab: bool,
    provider: Optional[ActiveWebTabProvider],
) -> List[WebTabContext]:
    """Sanitized web tabs for a new message, with the active tab frozen in.

    Never raises: when the active tab cannot be resolved the sanitized tabs
    are returned as they are.
    """

    existing = context.web_tabs if context else []
    sanitized = sanitize_web_tab_contexts(existing)

    should_include = include_active_web_tab or ACTIVE_WEB_TAB_MARKER in (display_text or "")
    if not should_include or provider is None:
        return sanitized

    if has_web_selection(context):
        logger.debug("Web selection attached, skipping active tab snapshot")
        return sanitized

    try:
        active = provider.get_active_web_tab()
    except Exception as e:
        logger.warning("Failed to resolve active web tab", error=str(e))
        return sanitized

    active_url = normalize_url_string(active.url) if active else None
    if active_url is None:
        return sanitized

    cleared = [tab.model_copy(update={"is_active": None}) if tab.is_active else tab for tab in sanitized]

    match_key = normalize_url_for_matching(active_url)
    for index, tab in enumerate(cleared):
        if normalize_url_for_matching(tab.url) == match_key:
            cleared[index] = tab.model_copy(update={
                "url": active_url,
                "title": _optional(active.title) or tab.title,
                "favicon_url": _optional(active.favicon_url) or tab.favicon_url,
                "is_active": True,
            })
            return cleared

    cleared.append(WebTabContext(
        url=active_url,
        title=_optional(active.title),
        favicon_url=_optional(active.favicon_url),
        is_active=True,
    ))
    return cleared

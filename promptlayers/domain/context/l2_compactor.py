"""Compacts previous-turn (L3) context for inclusion in L2.

Content promoted from earlier turns does not need to be verbatim. This is
deterministic extraction, not LLM summarization: markdown headings are kept,
each section is cut to a short preview, and the source path or URL stays in
the block so the model can ask for the full content. One re-fetch note at
the end of L2 explains how.
"""

from typing import List, Optional, Tuple
import re

from promptlayers.config import L2CompactionConfig
from promptlayers.domain.context.block_registry import (
    ContextSourceType,
    extract_content_from_block,
    extract_source_from_block,
    get_block_type,
    get_source_type,
    is_recoverable,
)

PRIOR_CONTEXT_NOTE_TAG = "prior_context_note"

_HEADING_RE = re.compile(r"^#{1,6}\s+\S")
_SENTENCE_END_RE = re.compile(r"[.!?](?=\s)")
_TOP_LEVEL_BLOCK_RE = re.compile(r"<(\w+)(\s[^>]*)?>[\s\S]*?</\1>")
_PRIOR_CONTEXT_BLOCK_RE = re.compile(r'<prior_context\s+source="')
_EXTRA_BLANK_LINES_RE = re.compile(r"\n{3,}")


def escape_xml_attr(value: str) -> str:
    return (
        value.replace("&", "&amp;")
        .replace('"', "&quot;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace("'", "&apos;")
    )


def truncate_with_ellipsis(text: str, max_length: int) -> str:
    """Cut text to roughly max_length at the nicest boundary past the halfway mark.

    Preference order: sentence end, paragraph break, word break, hard cut.
    """

    if len(text) <= max_length:
        return text

    window = text[:max_length]
    floor = max_length * 0.5

    sentence_ends = [m.start() for m in _SENTENCE_END_RE.finditer(window)]
    if sentence_ends and sentence_ends[-1] > floor:
        return text[:sentence_ends[-1] + 1] + " ..."

    paragraph = window.rfind("\n\n")
    if paragraph > floor:
        return text[:paragraph + 2] + "..."

    space = window.rfind(" ")
    if space > floor:
        return text[:space + 1] + "..."

    return window + "..."


def _split_sections(content: str) -> List[Tuple[Optional[str], str]]:
    sections: List[Tuple[Optional[str], str]] = []
    heading: Optional[str] = None
    body: List[str] = []
    in_fence = False

    for line in content.split("\n"):
        if line.lstrip().startswith("```"):
            in_fence = not in_fence
        elif not in_fence and _HEADING_RE.match(line):
            if heading is not None or "\n".join(body).strip():
                sections.append((heading, "\n".join(body)))
            heading = line
            body = []
            continue
        body.append(line)

    sections.append((heading, "\n".join(body)))
    return sections


def compact_by_section(content: str, preview_chars: int, max_sections: int) -> str:
    """Keep every heading (up to max_sections) with a preview of its body"""

    sections = _split_sections(content)
    if all(heading is None for heading, _ in sections):
        return truncate_with_ellipsis(content, preview_chars)

    kept = sections[:max_sections]
    parts = []
    for heading, body in kept:
        body = body.strip()
        preview = truncate_with_ellipsis(body, preview_chars) if body else ""
        parts.append("\n".join(part for part in (heading, preview) if part))

    result = "\n\n".join(parts)
    omitted = len(sections) - len(kept)
    if omitted > 0:
        result += f"\n\n[... {omitted} more sections omitted]"
    return result


def compact_l3_for_l2(
    content: str,
    source: str,
    source_type: ContextSourceType,
    config: Optional[L2CompactionConfig] = None,
) -> str:
    """Compact one block's inner content into a <prior_context> preview"""

    config = config or L2CompactionConfig()
    if len(content) <= config.verbatim_threshold:
        return content

    compacted = compact_by_section(content, config.preview_chars_per_section, config.max_sections)
    return (
        f'<prior_context source="{escape_xml_attr(source)}" type="{source_type}">\n'
        f"{compacted}\n"
        f"</prior_context>"
    )


def extract_source(xml_block: str) -> str:
    """First path, url or name child of a block, whatever its tag"""

    for tag in ("path", "url", "name"):
        match = re.search(rf"<{tag}>([^<]+)</{tag}>", xml_block)
        if match:
            return match.group(1)
    return ""


def compact_xml_block(xml_block: str, block_type: str, config: Optional[L2CompactionConfig] = None) -> str:
    """Compact a whole rendered block; non-recoverable blocks are never touched"""

    if not is_recoverable(block_type):
        return xml_block

    config = config or L2CompactionConfig()
    if len(xml_block) <= config.verbatim_threshold:
        return xml_block

    source = extract_source_from_block(xml_block, block_type) or extract_source(xml_block)
    content = extract_content_from_block(xml_block)
    return compact_l3_for_l2(content, source, get_source_type(block_type), config)


def compact_segment_for_l2(content: str, config: Optional[L2CompactionConfig] = None) -> str:
    """Prepare a previous turn's L3 segment for L2.

    Single pass over top-level blocks: non-recoverable blocks and embedded
    re-fetch notes are dropped, registered blocks are compacted, unknown
    blocks and loose text pass through. Tags nested inside a kept block are
    part of that block and are left alone.
    """

    parts: List[str] = []
    last = 0
    for match in _TOP_LEVEL_BLOCK_RE.finditer(content):
        parts.append(content[last:match.start()])
        last = match.end()

        tag = match.group(1)
        block = match.group(0)
        if tag == PRIOR_CONTEXT_NOTE_TAG:
            continue

        block_type = get_block_type(tag)
        if block_type is None:
            parts.append(block)
        elif block_type.recoverable:
            parts.append(compact_xml_block(block, tag, config))

    parts.append(content[last:])
    return _EXTRA_BLANK_LINES_RE.sub("\n\n", "".join(parts)).strip()


def has_prior_context_blocks(text: str) -> bool:
    """Whether text holds compactor-produced <prior_context source=...> blocks"""
    return bool(_PRIOR_CONTEXT_BLOCK_RE.search(text))


def get_l2_refetch_instruction() -> str:
    return (
        f"<{PRIOR_CONTEXT_NOTE_TAG}>\n"
        "The above prior_context blocks contain previews of content from earlier turns.\n"
        "To access full content: use [[note title]] for notes, or ask to read a specific URL/video.\n"
        f"</{PRIOR_CONTEXT_NOTE_TAG}>"
    )

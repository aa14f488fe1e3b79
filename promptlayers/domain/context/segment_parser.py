"""Turn rendered context strings back into addressable segments.

The renderer hands back one flat string per attachment group; segment ids
(file path, URL or tag name) are recovered from the registered block markers.
This is tied to the rendered block syntax: a tag the registry does not know
is skipped here and only survives as part of a group segment.
"""

from typing import Dict, List, Optional
import html
import re

from promptlayers.domain.context.block_registry import (
    CONTEXT_BLOCK_TYPES,
    extract_source_from_block,
    get_block_type,
)
from promptlayers.domain.models.envelope import PromptLayerSegment


PRIOR_CONTEXT_TAG = "prior_context"

_PARSEABLE_TAGS = [bt.tag for bt in CONTEXT_BLOCK_TYPES] + [PRIOR_CONTEXT_TAG]

BLOCK_RE = re.compile(
    r"<(" + "|".join(re.escape(tag) for tag in _PARSEABLE_TAGS) + r")(\s[^>]*)?>[\s\S]*?</\1>"
)

_ATTR_RE = re.compile(r'(\w+)="([^"]*)"')


def _attributes(raw: Optional[str]) -> Dict[str, str]:
    return {name: html.unescape(value) for name, value in _ATTR_RE.findall(raw or "")}


def parse_context_into_segments(text: str, stable: bool) -> List[PromptLayerSegment]:
    """Split a rendered context string into one segment per known block"""

    if not text or not text.strip():
        return []

    segments: List[PromptLayerSegment] = []
    seen: Dict[str, int] = {}

    for match in BLOCK_RE.finditer(text):
        block = match.group(0)
        tag = match.group(1)
        metadata = {"source": "previous_turns" if stable else "current_turn"}

        if tag == PRIOR_CONTEXT_TAG:
            attrs = _attributes(match.group(2))
            source = attrs.get("source", "")
            segment_id = source or PRIOR_CONTEXT_TAG
            metadata["source"] = "previous_turns_compacted"
            if source and attrs.get("type") == "note":
                metadata["note_path"] = source
            elif source and attrs.get("type") in ("url", "youtube"):
                metadata["url"] = source
        else:
            block_type = get_block_type(tag)
            source = extract_source_from_block(block, tag)
            segment_id = source or tag
            if source and block_type.source_type == "note" and block_type.source_extractor == "path":
                metadata["note_path"] = source

        count = seen.get(segment_id, 0) + 1
        seen[segment_id] = count
        if count > 1:
            segment_id = f"{segment_id}:{count}"

        segments.append(PromptLayerSegment(
            id=segment_id,
            content=block,
            stable=stable,
            metadata=metadata,
        ))

    return segments


def collect_note_paths(segments: List[PromptLayerSegment]) -> List[str]:
    """Note paths carried by parsed segments, first occurrence order"""

    paths: List[str] = []
    for segment in segments:
        path = segment.metadata.get("note_path")
        if path and path not in paths:
            paths.append(path)
    return paths

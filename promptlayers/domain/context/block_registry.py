"""Registry of the XML-like blocks the context renderer emits.

Single source of truth for tag names, the kind of source behind each block,
whether the model can re-fetch the content, and which child element holds
the source identifier.
"""

from typing import Dict, List, Literal, Optional
import re

from pydantic import BaseModel


ContextSourceType = Literal["note", "url", "youtube", "pdf", "selected_text", "unknown"]
SourceExtractor = Optional[Literal["path", "url", "name"]]


class ContextBlockType(BaseModel):
    tag: str
    source_type: ContextSourceType
    recoverable: bool
    source_extractor: SourceExtractor = None


CONTEXT_BLOCK_TYPES: List[ContextBlockType] = [
    # notes, re-fetchable by wiki-link
    ContextBlockType(tag="note_context", source_type="note", recoverable=True, source_extractor="path"),
    ContextBlockType(tag="active_note", source_type="note", recoverable=True, source_extractor="path"),
    ContextBlockType(tag="embedded_note", source_type="note", recoverable=True, source_extractor="path"),
    ContextBlockType(tag="vault_note", source_type="note", recoverable=True, source_extractor="path"),
    ContextBlockType(tag="retrieved_document", source_type="note", recoverable=True, source_extractor="path"),

    # web content
    ContextBlockType(tag="url_content", source_type="url", recoverable=True, source_extractor="url"),
    ContextBlockType(tag="web_tab_context", source_type="url", recoverable=True, source_extractor="url"),
    ContextBlockType(tag="active_web_tab", source_type="url", recoverable=True, source_extractor="url"),
    ContextBlockType(tag="twitter_content", source_type="url", recoverable=True, source_extractor="url"),
    ContextBlockType(tag="youtube_video_context", source_type="youtube", recoverable=True, source_extractor="url"),

    ContextBlockType(tag="embedded_pdf", source_type="pdf", recoverable=True, source_extractor="name"),

    # selections cannot be re-fetched, the user has to select again
    ContextBlockType(tag="selected_text", source_type="selected_text", recoverable=False),
    ContextBlockType(tag="web_selected_text", source_type="selected_text", recoverable=False),

    ContextBlockType(tag="localSearch", source_type="note", recoverable=True),
]

_BLOCK_TYPES_BY_TAG: Dict[str, ContextBlockType] = {bt.tag: bt for bt in CONTEXT_BLOCK_TYPES}

_CONTENT_RE = re.compile(r"<content>([\s\S]*?)</content>")


def get_block_type(tag: str) -> Optional[ContextBlockType]:
    return _BLOCK_TYPES_BY_TAG.get(tag)


def get_source_type(tag: str) -> ContextSourceType:
    block_type = _BLOCK_TYPES_BY_TAG.get(tag)
    return block_type.source_type if block_type else "unknown"


def is_recoverable(tag: str) -> bool:
    block_type = _BLOCK_TYPES_BY_TAG.get(tag)
    return block_type.recoverable if block_type else False


def extract_source_from_block(xml_block: str, tag: str) -> str:
    """Source identifier of a block, using the extractor registered for its tag"""

    block_type = _BLOCK_TYPES_BY_TAG.get(tag)
    if block_type is None or block_type.source_extractor is None:
        return ""

    extractor = block_type.source_extractor
    match = re.search(rf"<{extractor}>([^<]+)</{extractor}>", xml_block)
    return match.group(1) if match else ""


def extract_content_from_block(xml_block: str) -> str:
    """Inner <content> of a block, or the whole block when there is none"""

    match = _CONTENT_RE.search(xml_block)
    return match.group(1) if match else xml_block

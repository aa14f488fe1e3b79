from typing import Dict, List
import asyncio
import re

import structlog
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import HumanMessage
from pydantic import BaseModel

from promptlayers.domain.models.envelope import CompactionResult

logger = structlog.get_logger(__name__)


SUMMARY_PROMPT = """Summarize the following content, preserving:
- Key concepts and main ideas
- Important facts, names, and dates
- Technical details relevant for Q&A

Keep the summary concise but information-dense. Output only the summary.

Title: {title}
Path: {path}

Content:
{content}

Summary:"""

COMPACTABLE_BLOCK_TYPES = [
    "note_context",
    "active_note",
    "url_content",
    "selected_text",
    "embedded_note",
    "embedded_pdf",
    "web_tab_context",
    "active_web_tab",
    "youtube_video_context",
]

# rebuilt with <url> rather than <path>
URL_BASED_TYPES = {"url_content", "web_tab_context", "active_web_tab", "youtube_video_context"}

SUMMARIZED_MARKER = "[SUMMARIZED]"


class ContextItem(BaseModel):
    """One rendered block located in the compacted text"""
    type: str
    path: str = ""
    title: str = ""
    content: str = ""
    ctime: str = ""
    mtime: str = ""
    start: int
    end: int


class ContextCompactor:
    """Map-reduce summarization of oversized context.

    Blocks are parsed out of the rendered context, items whose content is
    at least min_item_size characters are summarized by the chat model in
    batches of max_concurrency, and the summaries are written back into the
    original block structure. Items that fail keep their content; if fewer
    than half of the candidates succeed nothing is changed.

    Temperature is whatever the supplied model was configured with; a low
    value (around 0.1) gives the most repeatable summaries.
    """

    def __init__(
        self,
        chat_model: BaseChatModel,
        min_item_size: int = 50000,
        max_item_size: int = 500000,
        max_concurrency: int = 3,
    ):
        self.chat_model = chat_model
        self.min_item_size = min_item_size
        self.max_item_size = max_item_size
        self.max_concurrency = max(max_concurrency, 1)
        self._block_patterns = {
            block_type: re.compile(rf"<{block_type}(?:\s[^>]*)?>[\s\S]*?</{block_type}>")
            for block_type in COMPACTABLE_BLOCK_TYPES
        }

    async def compact(self, text: str) -> CompactionResult:
        """Compact text, returning it unchanged when nothing could be summarized"""

        original_chars = len(text)
        logger.info("Starting compaction", original_chars=original_chars)

        items = self.parse_items(text)
        if not items:
            return self._unchanged(text)

        summaries = await self._summarize_items(items)
        if not summaries:
            return self._unchanged(text)

        compacted = self._rebuild(text, items, summaries)

        logger.info(
            "Compaction complete",
            original_chars=original_chars,
            compacted_chars=len(compacted),
            items_processed=len(items),
            items_summarized=len(summaries),
        )

        return CompactionResult(
            content=compacted,
            was_compacted=True,
            original_char_count=original_chars,
            compacted_char_count=len(compacted),
            items_processed=len(items),
            items_summarized=len(summaries),
        )

    def parse_items(self, text: str) -> List[ContextItem]:
        """Top-level compactable blocks in document order"""

        items: List[ContextItem] = []
        for block_type, pattern in self._block_patterns.items():
            for match in pattern.finditer(text):
                items.append(self._parse_block(match.group(0), block_type, match.start()))

        items.sort(key=lambda item: item.start)

        # blocks nested inside another block are replaced with their parent
        return [
            item for i, item in enumerate(items)
            if not any(
                i != j and other.start <= item.start and other.end >= item.end
                for j, other in enumerate(items)
            )
        ]

    def _parse_block(self, block: str, block_type: str, start: int) -> ContextItem:
        def child(tag: str) -> str:
            match = re.search(rf"<{tag}>([^<]*)</{tag}>", block)
            return match.group(1) if match else ""

        content = re.search(r"<content>([\s\S]*?)</content>", block)
        path = child("path") or child("url")

        return ContextItem(
            type=block_type,
            path=path,
            title=child("title") or path.split("/")[-1] or "Untitled",
            content=content.group(1) if content else "",
            ctime=child("ctime"),
            mtime=child("mtime"),
            start=start,
            end=start + len(block),
        )

    async def _summarize_items(self, items: List[ContextItem]) -> Dict[int, str]:
        candidates = [
            (index, item) for index, item in enumerate(items)
            if len(item.content) >= self.min_item_size
        ]
        if not candidates:
            return {}

        logger.info("Summarizing context items", count=len(candidates))

        summaries: Dict[int, str] = {}
        for offset in range(0, len(candidates), self.max_concurrency):
            batch = candidates[offset:offset + self.max_concurrency]
            results = await asyncio.gather(
                *(self._summarize_safely(index, item) for index, item in batch)
            )
            for index, summary in results:
                if summary:
                    summaries[index] = summary

        if len(summaries) < len(candidates) * 0.5:
            logger.warning(
                "High summarization failure rate, skipping compaction",
                candidates=len(candidates),
                succeeded=len(summaries),
            )
            return {}

        return summaries

    async def _summarize_safely(self, index: int, item: ContextItem):
        try:
            return index, await self.summarize(item)
        except Exception as e:
            logger.warning("Failed to summarize context item", index=index, path=item.path, error=str(e))
            return index, None

    async def summarize(self, item: ContextItem) -> str:
        content = item.content
        if len(content) > self.max_item_size:
            content = content[:self.max_item_size] + "\n[TRUNCATED]"

        prompt = SUMMARY_PROMPT.format(title=item.title, path=item.path, content=content)
        response = await self.chat_model.ainvoke([HumanMessage(content=prompt)])

        return response.content.strip() if isinstance(response.content, str) else ""

    def _rebuild(self, text: str, items: List[ContextItem], summaries: Dict[int, str]) -> str:
        result = text
        # back to front so earlier offsets stay valid
        for index in sorted(summaries, reverse=True):
            item = items[index]
            result = result[:item.start] + self._build_block(item, summaries[index]) + result[item.end:]
        return result

    def _build_block(self, item: ContextItem, summary: str) -> str:
        parts = [f"<{item.type}>"]
        if item.title:
            parts.append(f"<title>{item.title}</title>")
        if item.path:
            tag = "url" if item.type in URL_BASED_TYPES else "path"
            parts.append(f"<{tag}>{item.path}</{tag}>")
        if item.ctime:
            parts.append(f"<ctime>{item.ctime}</ctime>")
        if item.mtime:
            parts.append(f"<mtime>{item.mtime}</mtime>")
        parts.append(f"<content>{SUMMARIZED_MARKER}\n{summary}</content>")
        parts.append(f"</{item.type}>")
        return "\n".join(parts)

    def _unchanged(self, text: str) -> CompactionResult:
        return CompactionResult(
            content=text,
            was_compacted=False,
            original_char_count=len(text),
            compacted_char_count=len(text),
        )

from typing import Dict, List, Any, Iterable, Optional, Set, Tuple
import structlog
from pydantic import BaseModel, Field

from promptlayers.config import ContextSettings
from promptlayers.domain.models.envelope import (
    CompactionResult,
    ContextProcessingResult,
    PromptContextEnvelope,
    PromptLayerId,
    PromptLayerSegment,
)
from promptlayers.domain.models.message import (
    ChainKind,
    ChatMessage,
    MessageContext,
    NoteRef,
    StoredMessage,
    is_user_sender,
)
from promptlayers.infrastructure.observability.logging import context_logger
from .collaborators import (
    Compactor,
    ContextRenderer,
    FileResolver,
    PromptTemplateProcessor,
    UrlContentResolver,
    UrlContext,
)
from .l2_compactor import (
    PRIOR_CONTEXT_NOTE_TAG,
    compact_segment_for_l2,
    get_l2_refetch_instruction,
    has_prior_context_blocks,
)
from .memory.message_store import MessageStore
from .prompt_context_engine import PromptContextEngine
from .segment_parser import collect_note_paths, parse_context_into_segments

logger = structlog.get_logger(__name__)

# chains that fetch URL content for the turn
URL_CONTEXT_CHAINS = {ChainKind.COPILOT_PLUS}

# metadata keys on L3 segments that name sources already sent to the model
SOURCE_PATH_KEYS = ("note_path", "note_paths", "compacted_paths", "urls")


class L2BuildResult(BaseModel):
    """Previous-turn library and the sources it already covers"""
    l2_context: str = ""
    excluded_paths: Set[str] = Field(default_factory=set)


class TurnContext(BaseModel):
    """Rendered current-turn context, one field per attachment group"""
    notes: str = ""
    tags: str = ""
    folders: str = ""
    urls: str = ""
    selected_text: str = ""
    web_tabs: str = ""
    note_paths: List[str] = Field(default_factory=list)
    tag_paths: List[str] = Field(default_factory=list)
    folder_paths: List[str] = Field(default_factory=list)
    rendered_urls: List[str] = Field(default_factory=list)
    web_tab_urls: List[str] = Field(default_factory=list)
    image_urls: List[str] = Field(default_factory=list)

    @property
    def l3_paths(self) -> List[str]:
        paths: List[str] = []
        for path in self.note_paths + self.tag_paths + self.folder_paths + self.rendered_urls:
            if path not in paths:
                paths.append(path)
        return paths

    def joined(self) -> str:
        return self.notes + self.tags + self.folders + self.urls + self.selected_text + self.web_tabs


class ContextManager:
    """Assembles the layered prompt context for each user turn.

    Per turn it builds the previous-turn library (L2) from earlier turns'
    envelopes, renders only the attachments not already covered (L3),
    compacts when the result is too large, and records everything in an
    envelope so later turns can deduplicate against it.
    """

    def __init__(
        self,
        renderer: ContextRenderer,
        prompt_processor: PromptTemplateProcessor,
        url_resolver: UrlContentResolver,
        file_resolver: FileResolver,
        compactor: Optional[Compactor] = None,
        settings: Optional[ContextSettings] = None,
        prompt_engine: Optional[PromptContextEngine] = None,
    ):
        self.renderer = renderer
        self.prompt_processor = prompt_processor
        self.url_resolver = url_resolver
        self.file_resolver = file_resolver
        self.compactor = compactor
        self.settings = settings or ContextSettings()
        self.prompt_engine = prompt_engine or PromptContextEngine()

    async def process_message_context(
        self,
        message: ChatMessage,
        chain_kind: ChainKind,
        include_active_note: bool,
        active_note: Optional[NoteRef],
        message_store: MessageStore,
        system_prompt: str = "",
        system_prompt_covered_paths: Optional[Iterable[str]] = None,
    ) -> ContextProcessingResult:
        """Build the text sent to the model and the envelope describing it.

        Any failure degrades to the unprocessed user text with no envelope.
        """

        raw_text = message.original_message or message.message

        try:
            logger.info("Processing message context", message_id=message.id, chain_kind=chain_kind.value)
            context = message.context or MessageContext()

            # 1. template references; files they pulled in are not rendered again
            prompt = await self.prompt_processor.process_prompt(raw_text, "", active_note)
            user_text = prompt.processed_prompt
            excluded_paths = {note.path for note in prompt.included_files}
            excluded_paths.update(system_prompt_covered_paths or ())

            # 2. previous-turn library
            l2 = self.build_l2_context_from_previous_turns(message.id, message_store) if message.id else L2BuildResult()
            excluded_paths.update(l2.excluded_paths)

            # 3-5. current turn
            turn = await self._render_turn_context(
                context, chain_kind, include_active_note, active_note, excluded_paths
            )

            # 6. the user's own text is never part of what gets compacted
            context_portion = l2.l2_context + turn.joined()
            processed_content = user_text + context_portion

            # 7.
            compaction = await self._maybe_compact(message.id, context_portion, chain_kind)
            if compaction is not None:
                compacted = compaction.content
                if compacted and not compacted[0].isspace():
                    compacted = "\n\n" + compacted
                processed_content = user_text + compacted

            # 8.
            envelope = self._build_envelope(
                message_id=message.id,
                conversation_id=message_store.conversation_id,
                chain_kind=chain_kind,
                system_prompt=system_prompt,
                user_text=user_text,
                l2_context=l2.l2_context,
                turn=turn,
                compaction=compaction,
            )

            if envelope is not None:
                context_logger.log_envelope_built(
                    message.id,
                    {layer.id.value: len(layer.text) for layer in envelope.layers},
                    excluded_paths=len(excluded_paths),
                )

            return ContextProcessingResult(
                processed_content=processed_content,
                context_envelope=envelope,
                image_urls=turn.image_urls,
            )

        except Exception as e:
            logger.warning(
                "Context processing failed, sending unprocessed text",
                message_id=message.id,
                error=str(e),
                exc_info=True,
            )
            return ContextProcessingResult(processed_content=raw_text)

    async def reprocess_message_context(
        self,
        message_id: str,
        message_store: MessageStore,
        chain_kind: ChainKind,
        include_active_note: bool = False,
        active_note: Optional[NoteRef] = None,
        system_prompt: str = "",
        system_prompt_covered_paths: Optional[Iterable[str]] = None,
    ) -> None:
        """Rebuild processed text and envelope for a stored user message"""

        message = message_store.get_message(message_id)
        if message is None or not message.id or not is_user_sender(message.sender):
            return

        logger.info("Reprocessing message context", message_id=message_id)

        result = await self.process_message_context(
            message,
            chain_kind,
            include_active_note,
            active_note,
            message_store,
            system_prompt=system_prompt,
            system_prompt_covered_paths=system_prompt_covered_paths,
        )
        message_store.update_processed_text(message.id, result.processed_content, result.context_envelope)

        context_logger.log_context_update(
            message.id,
            context_type="turn",
            action="reprocessed",
            details={"has_envelope": result.context_envelope is not None},
        )

    def build_l2_context_from_previous_turns(self, message_id: str, message_store: MessageStore) -> L2BuildResult:
        """Build the cumulative library of earlier turns' context.

        Content is taken from the most recent compacted turn onwards; source
        paths are collected from every earlier turn so they are never
        rendered as new context again.
        """

        previous = message_store.get_prior_user_messages(message_id)
        if not previous:
            return L2BuildResult()

        excluded_paths: Set[str] = set()
        start = 0
        for index, stored in enumerate(previous):
            segments = self._turn_segments(stored)
            excluded_paths.update(self._source_paths(segments))
            if any(segment.metadata.get("was_compacted") for segment in segments):
                start = index

        blocks: List[str] = []
        for stored in previous[start:]:
            for segment in self._turn_segments(stored):
                compacted = compact_segment_for_l2(segment.content, self.settings.l2_compaction)
                if compacted:
                    blocks.append(compacted)

        if not blocks:
            return L2BuildResult(excluded_paths=excluded_paths)

        l2_context = "\n\n".join(blocks)
        if has_prior_context_blocks(l2_context):
            l2_context += "\n\n" + get_l2_refetch_instruction()

        return L2BuildResult(l2_context="\n\n" + l2_context, excluded_paths=excluded_paths)

    def compaction_threshold_chars(self, chain_kind: ChainKind) -> int:
        """Character budget of the context portion; 0 means never compact"""

        if chain_kind == ChainKind.PROJECT:
            tokens = self.settings.project_compact_threshold_tokens
        else:
            tokens = self.settings.auto_compact_threshold_tokens
        return max(tokens, 0) * self.settings.chars_per_token

    def _turn_segments(self, stored: StoredMessage) -> List[PromptLayerSegment]:
        if stored.context_envelope is None:
            return []
        return stored.context_envelope.get_segments(PromptLayerId.L3_TURN)

    def _source_paths(self, segments: List[PromptLayerSegment]) -> Set[str]:
        paths: Set[str] = set()
        for segment in segments:
            for key in SOURCE_PATH_KEYS:
                value = segment.metadata.get(key)
                if isinstance(value, str) and value:
                    paths.add(value)
                elif isinstance(value, (list, tuple, set)):
                    paths.update(item for item in value if isinstance(item, str) and item)
        return paths

    async def _render_turn_context(
        self,
        context: MessageContext,
        chain_kind: ChainKind,
        include_active_note: bool,
        active_note: Optional[NoteRef],
        excluded_paths: Set[str],
    ) -> TurnContext:
        turn = TurnContext()

        url_result, turn.rendered_urls = await self._render_urls(context.urls, chain_kind, excluded_paths)
        turn.urls = url_result.url_context
        turn.image_urls = url_result.image_urls

        notes = list(context.notes)
        render_active = (
            include_active_note
            and chain_kind != ChainKind.PROJECT
            and active_note is not None
            and active_note.path not in excluded_paths
        )
        if render_active and not any(note.path == active_note.path for note in notes):
            notes.append(active_note)

        turn.notes, turn.note_paths = await self._render_note_group(
            notes, chain_kind, excluded_paths, active_note if render_active else None
        )

        if context.tags:
            tagged = await self.file_resolver.get_notes_from_tags(context.tags)
            turn.tags, turn.tag_paths = await self._render_note_group(tagged, chain_kind, excluded_paths)

        if context.folders:
            folder_notes: List[NoteRef] = []
            for folder in context.folders:
                folder_notes.extend(await self.file_resolver.get_notes_from_folder(folder))
            turn.folders, turn.folder_paths = await self._render_note_group(folder_notes, chain_kind, excluded_paths)

        # ephemeral per-turn signals, never deduplicated against L2
        if context.selected_text_contexts:
            turn.selected_text = await self.renderer.render_selected_text(context.selected_text_contexts)
        if context.web_tabs:
            turn.web_tabs = await self.renderer.render_web_tabs(context.web_tabs, chain_kind)
            turn.web_tab_urls = [tab.url for tab in context.web_tabs]

        return turn

    async def _render_note_group(
        self,
        notes: List[NoteRef],
        chain_kind: ChainKind,
        excluded_paths: Set[str],
        active_note: Optional[NoteRef] = None,
    ) -> Tuple[str, List[str]]:
        """Render notes not yet excluded; rendered paths join the exclusion set"""

        pending: List[NoteRef] = []
        for note in notes:
            if note.path in excluded_paths or any(p.path == note.path for p in pending):
                continue
            pending.append(note)

        if not pending:
            return "", []

        if active_note is not None and not any(p.path == active_note.path for p in pending):
            active_note = None

        text = await self.renderer.render_notes(set(excluded_paths), pending, chain_kind, active_note)
        rendered = collect_note_paths(parse_context_into_segments(text, stable=False))
        excluded_paths.update(rendered)
        return text, rendered

    async def _render_urls(
        self,
        urls: List[str],
        chain_kind: ChainKind,
        excluded_paths: Set[str],
    ) -> Tuple[UrlContext, List[str]]:
        if chain_kind not in URL_CONTEXT_CHAINS or not urls:
            return UrlContext(), []

        pending = [url for url in dict.fromkeys(urls) if url not in excluded_paths]
        if not pending:
            return UrlContext(), []

        result = await self.url_resolver.process_url_list(pending)
        if not result.url_context.strip():
            return result, []

        excluded_paths.update(pending)
        return result, pending

    async def _maybe_compact(
        self,
        message_id: Optional[str],
        context_portion: str,
        chain_kind: ChainKind,
    ) -> Optional[CompactionResult]:
        threshold = self.compaction_threshold_chars(chain_kind)
        if self.compactor is None or threshold <= 0 or len(context_portion) <= threshold:
            return None

        result = await self.compactor.compact(context_portion)
        context_logger.log_compaction(
            message_id,
            threshold_chars=threshold,
            original_chars=len(context_portion),
            compacted_chars=len(result.content),
            was_compacted=result.was_compacted,
        )
        return result if result.was_compacted else None

    def _build_envelope(
        self,
        message_id: Optional[str],
        conversation_id: Optional[str],
        chain_kind: ChainKind,
        system_prompt: str,
        user_text: str,
        l2_context: str,
        turn: TurnContext,
        compaction: Optional[CompactionResult],
    ) -> Optional[PromptContextEnvelope]:
        if not message_id:
            return None

        layer_segments: Dict[PromptLayerId, List[PromptLayerSegment]] = {}

        if system_prompt and system_prompt.strip():
            layer_segments[PromptLayerId.L1_SYSTEM] = [PromptLayerSegment(
                id="system",
                content=system_prompt,
                stable=True,
                metadata={"source": "system_prompt"},
            )]

        if compaction is not None:
            # the compacted text subsumes L2, so no separate previous-turn segments
            layer_segments[PromptLayerId.L3_TURN] = [PromptLayerSegment(
                id="compacted_context",
                content=compaction.content.strip(),
                stable=False,
                metadata={
                    "source": "compacted",
                    "was_compacted": True,
                    "compacted_paths": turn.l3_paths,
                    "original_char_count": compaction.original_char_count,
                    "compacted_char_count": compaction.compacted_char_count,
                },
            )]
        else:
            l2_segments = self._previous_turn_segments(l2_context)
            if l2_segments:
                layer_segments[PromptLayerId.L2_PREVIOUS] = l2_segments
            turn_segments = self._current_turn_segments(turn)
            if turn_segments:
                layer_segments[PromptLayerId.L3_TURN] = turn_segments

        layer_segments[PromptLayerId.L5_USER] = [PromptLayerSegment(
            id=f"{message_id}-user",
            content=user_text,
            stable=False,
            metadata={"source": "user_input"},
        )]

        return self.prompt_engine.build_envelope(
            message_id,
            layer_segments,
            conversation_id=conversation_id,
            metadata={"debug_label": f"message:{message_id}", "chain_kind": chain_kind.value},
        )

    def _previous_turn_segments(self, l2_context: str) -> List[PromptLayerSegment]:
        if not l2_context.strip():
            return []

        segments = parse_context_into_segments(l2_context, stable=True)
        if not segments:
            return [PromptLayerSegment(
                id="previous_context",
                content=l2_context,
                stable=True,
                metadata={"source": "previous_turns"},
            )]

        if f"<{PRIOR_CONTEXT_NOTE_TAG}>" in l2_context:
            segments.append(PromptLayerSegment(
                id=PRIOR_CONTEXT_NOTE_TAG,
                content=get_l2_refetch_instruction(),
                stable=True,
                metadata={"source": "previous_turns"},
            ))
        return segments

    def _current_turn_segments(self, turn: TurnContext) -> List[PromptLayerSegment]:
        segments: List[PromptLayerSegment] = []

        note_segments = parse_context_into_segments(turn.notes, stable=False)
        if note_segments:
            segments.extend(note_segments)
        else:
            self._append_group_segment(segments, "notes", turn.notes, {"note_paths": turn.note_paths})

        self._append_group_segment(segments, "tags", turn.tags, {"note_paths": turn.tag_paths})
        self._append_group_segment(segments, "folders", turn.folders, {"note_paths": turn.folder_paths})
        self._append_group_segment(segments, "urls", turn.urls, {"urls": turn.rendered_urls})
        self._append_group_segment(segments, "selected_text", turn.selected_text, {})
        self._append_group_segment(segments, "web_tabs", turn.web_tabs, {"web_tab_urls": turn.web_tab_urls})
        return segments

    def _append_group_segment(
        self,
        target: List[PromptLayerSegment],
        segment_id: str,
        content: str,
        metadata: Dict[str, Any],
    ) -> None:
        normalized = (content or "").strip()
        if not normalized:
            return

        target.append(PromptLayerSegment(
            id=segment_id,
            content=normalized,
            stable=False,
            metadata={"source": segment_id, **metadata},
        ))

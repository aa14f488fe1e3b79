from typing import Dict, Any, List, Optional
import hashlib

import structlog

from promptlayers.domain.models.envelope import (
    PROMPT_LAYER_LABELS,
    PROMPT_LAYER_ORDER,
    PromptContextEnvelope,
    PromptContextLayer,
    PromptLayerId,
    PromptLayerSegment,
)

logger = structlog.get_logger(__name__)


class PromptContextEngine:
    """Builds layered prompt envelopes with per-layer hashes.

    Layer text is whitespace-normalized before hashing so identical content
    hashes identically regardless of how callers formatted it; stable layers
    can then be compared turn over turn for upstream prompt caching.
    """

    ENVELOPE_VERSION = 1

    def build_envelope(
        self,
        message_id: Optional[str],
        layer_segments: Dict[PromptLayerId, List[PromptLayerSegment]],
        conversation_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> PromptContextEnvelope:
        """Build an envelope from the segments of each layer"""

        layers = [
            self._build_layer(layer_id, layer_segments.get(layer_id, []))
            for layer_id in PROMPT_LAYER_ORDER
        ]

        serialized_text = "\n\n".join(layer.text for layer in layers if layer.text)
        layer_hashes = {layer.id.value: layer.hash for layer in layers}

        debug_label = (metadata or {}).get("debug_label")
        if debug_label:
            logger.debug("Built envelope", label=debug_label, layer_hashes=layer_hashes)

        return PromptContextEnvelope(
            version=self.ENVELOPE_VERSION,
            conversation_id=conversation_id,
            message_id=message_id,
            layers=layers,
            serialized_text=serialized_text,
            layer_hashes=layer_hashes,
            combined_hash=self._hash(serialized_text),
            debug={"warnings": self._collect_warnings(layers), **(metadata or {})},
        )

    def _build_layer(self, layer_id: PromptLayerId, segments: List[PromptLayerSegment]) -> PromptContextLayer:
        sanitized = [
            segment.model_copy(update={
                "id": segment.id or f"{layer_id.value}-segment-{index}",
                "content": self._normalize_whitespace(segment.content),
            })
            for index, segment in enumerate(segments)
        ]

        text = self._normalize_whitespace(
            "\n\n".join(segment.content for segment in sanitized if segment.content)
        )

        return PromptContextLayer(
            id=layer_id,
            label=PROMPT_LAYER_LABELS[layer_id],
            text=text,
            segments=sanitized,
            stable=all(segment.stable for segment in sanitized),
            metadata=sanitized[0].metadata if len(sanitized) == 1 else None,
            hash=self._hash(text),
        )

    def _hash(self, value: str) -> str:
        return hashlib.sha256((value or "").encode("utf-8")).hexdigest()

    def _normalize_whitespace(self, value: str) -> str:
        return (value or "").strip()

    def _collect_warnings(self, layers: List[PromptContextLayer]) -> List[str]:
        return [
            f"Layer {layer.id.value} contains control characters"
            for layer in layers
            if layer.text and "\x00" in layer.text
        ]

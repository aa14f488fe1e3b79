from typing import Dict, Any, List, Optional
from pydantic import BaseModel, Field
from enum import Enum


class PromptLayerId(str, Enum):
    """Layer roles in fixed semantic order. L4 is reserved and never emitted."""
    L1_SYSTEM = "L1_SYSTEM"
    L2_PREVIOUS = "L2_PREVIOUS"
    L3_TURN = "L3_TURN"
    L5_USER = "L5_USER"


PROMPT_LAYER_ORDER: List[PromptLayerId] = [
    PromptLayerId.L1_SYSTEM,
    PromptLayerId.L2_PREVIOUS,
    PromptLayerId.L3_TURN,
    PromptLayerId.L5_USER,
]

PROMPT_LAYER_LABELS: Dict[PromptLayerId, str] = {
    PromptLayerId.L1_SYSTEM: "System & Policies",
    PromptLayerId.L2_PREVIOUS: "Previous Turn Context",
    PromptLayerId.L3_TURN: "Current Turn Context",
    PromptLayerId.L5_USER: "User Message",
}


class PromptLayerSegment(BaseModel):
    """One addressable unit of content within a layer"""
    id: str = Field(description="Stable identity: file path, URL or segment kind")
    content: str
    stable: bool = Field(True, description="Expected to stay byte-identical across turns")
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PromptContextLayer(BaseModel):
    """Rendered layer with its segments and hash"""
    id: PromptLayerId
    label: str
    text: str = ""
    segments: List[PromptLayerSegment] = Field(default_factory=list)
    stable: bool = True
    metadata: Optional[Dict[str, Any]] = None
    hash: str = ""


class PromptContextEnvelope(BaseModel):
    """Structured per-message record of what went into the prompt"""
    version: int = 1
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None
    layers: List[PromptContextLayer] = Field(default_factory=list)
    serialized_text: str = ""
    layer_hashes: Dict[str, str] = Field(default_factory=dict)
    combined_hash: str = ""
    debug: Dict[str, Any] = Field(default_factory=dict)

    def get_layer(self, layer_id: PromptLayerId) -> Optional[PromptContextLayer]:
        for layer in self.layers:
            if layer.id == layer_id:
                return layer
        return None

    def get_segments(self, layer_id: PromptLayerId) -> List[PromptLayerSegment]:
        layer = self.get_layer(layer_id)
        return layer.segments if layer else []

    @property
    def layer_segments(self) -> Dict[PromptLayerId, List[PromptLayerSegment]]:
        return {layer.id: layer.segments for layer in self.layers}


class CompactionResult(BaseModel):
    """Outcome of a compaction pass"""
    content: str
    was_compacted: bool = False
    original_char_count: int = 0
    compacted_char_count: int = 0
    items_processed: int = 0
    items_summarized: int = 0


class ContextProcessingResult(BaseModel):
    """Result of processing context for one message"""
    processed_content: str
    context_envelope: Optional[PromptContextEnvelope] = None
    image_urls: List[str] = Field(default_factory=list)

from typing import Optional
import os

from pydantic import BaseModel, Field


class L2CompactionConfig(BaseModel):
    """Deterministic compaction applied when previous-turn context is promoted to L2"""
    verbatim_threshold: int = Field(2000, description="Blocks up to this many chars stay verbatim")
    preview_chars_per_section: int = Field(500, description="Preview length kept per markdown section")
    max_sections: int = Field(20, description="Sections kept before the rest is omitted")


class ContextSettings(BaseModel):
    """Policy knobs for the layering engine"""
    auto_compact_threshold_tokens: int = Field(
        128000, description="Compaction threshold in tokens; 0 disables compaction"
    )
    project_compact_threshold_tokens: int = Field(
        1000000, description="Fixed threshold used for project chains"
    )
    chars_per_token: int = Field(4, description="Character-per-token estimate")
    l2_compaction: L2CompactionConfig = Field(default_factory=L2CompactionConfig)

    @classmethod
    def from_env(cls, prefix: str = "PROMPTLAYERS_") -> "ContextSettings":
        """Build settings from environment variables, falling back to defaults"""

        def env_int(name: str) -> Optional[int]:
            value = os.getenv(f"{prefix}{name}")
            return int(value) if value not in (None, "") else None

        values = {}
        for field_name, env_name in (
            ("auto_compact_threshold_tokens", "AUTO_COMPACT_THRESHOLD"),
            ("project_compact_threshold_tokens", "PROJECT_COMPACT_THRESHOLD"),
            ("chars_per_token", "CHARS_PER_TOKEN"),
        ):
            value = env_int(env_name)
            if value is not None:
                values[field_name] = value

        l2_values = {}
        for field_name, env_name in (
            ("verbatim_threshold", "L2_VERBATIM_THRESHOLD"),
            ("preview_chars_per_section", "L2_PREVIEW_CHARS"),
            ("max_sections", "L2_MAX_SECTIONS"),
        ):
            value = env_int(env_name)
            if value is not None:
                l2_values[field_name] = value
        if l2_values:
            values["l2_compaction"] = L2CompactionConfig(**l2_values)

        return cls(**values)

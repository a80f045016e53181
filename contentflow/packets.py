"""DataPacket: the unit of content threaded between pipeline steps."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

from .errors import PacketIntegrityError

logger = logging.getLogger(__name__)

DATA_PACKET = "data"
TOOL_RESULT_PACKET = "tool_result"
HANDLER_COMPLETE_PACKET = "ai_handler_complete"
UPDATE_PACKET = "update"

TOOL_RESULT_TYPES = frozenset({TOOL_RESULT_PACKET, HANDLER_COMPLETE_PACKET})

# Keys downstream steps rely on to find the original artifact again.
IDENTIFYING_METADATA_KEYS = (
    "source_url",
    "item_identifier",
    "original_id",
    "post_id",
    "row_id",
)


class PacketContent(BaseModel):
    """Free text body plus arbitrary nested fields."""

    model_config = ConfigDict(frozen=True, extra="allow")

    body: str = ""


def merge_metadata(
    existing: Mapping[str, Any], updates: Optional[Mapping[str, Any]]
) -> Dict[str, Any]:
    """Merge ``updates`` into ``existing`` without replacing identifying keys."""
    merged = dict(existing)
    for key, value in (updates or {}).items():
        if key in merged and merged[key] != value:
            if key in IDENTIFYING_METADATA_KEYS:
                raise PacketIntegrityError(
                    f"Metadata key '{key}' identifies the source item and cannot "
                    f"be changed ({merged[key]!r} -> {value!r})"
                )
            logger.debug(f"Packet metadata '{key}' replaced: {merged[key]!r} -> {value!r}")
        merged[key] = value
    return merged


class DataPacket(BaseModel):
    """Immutable content unit with metadata and processing history."""

    model_config = ConfigDict(frozen=True)

    type: str = DATA_PACKET
    title: str = ""
    content: PacketContent = Field(default_factory=PacketContent)
    source_type: str = "unknown"
    metadata: Dict[str, Any] = Field(default_factory=dict)
    processing_steps: List[str] = Field(default_factory=list)

    @property
    def body(self) -> str:
        return self.content.body

    @property
    def identity(self) -> Dict[str, Any]:
        """Identifying metadata carried by this packet."""
        return {k: self.metadata[k] for k in IDENTIFYING_METADATA_KEYS if k in self.metadata}

    @property
    def is_tool_result(self) -> bool:
        return self.type in TOOL_RESULT_TYPES

    @property
    def handler_tool(self) -> Optional[str]:
        return self.metadata.get("handler_tool")

    def with_step(self, step_name: str) -> "DataPacket":
        """Copy of this packet with ``step_name`` appended to its history."""
        if self.processing_steps and self.processing_steps[-1] == step_name:
            return self
        return self.model_copy(
            update={"processing_steps": [*self.processing_steps, step_name]}
        )

    def derive(
        self,
        step_name: str,
        *,
        type: Optional[str] = None,
        title: Optional[str] = None,
        body: Optional[str] = None,
        fields: Optional[Mapping[str, Any]] = None,
        metadata: Optional[Mapping[str, Any]] = None,
        source_type: Optional[str] = None,
    ) -> "DataPacket":
        """Build the packet a later step produces from this one.

        Metadata is inherited and may be extended; identifying keys cannot be
        replaced (``PacketIntegrityError``).
        """
        content = self.content.model_dump()
        if body is not None:
            content["body"] = body
        if fields:
            content.update(fields)
        return DataPacket(
            type=type or self.type,
            title=self.title if title is None else title,
            content=PacketContent(**content),
            source_type=source_type or self.source_type,
            metadata=merge_metadata(self.metadata, metadata),
            processing_steps=[*self.processing_steps, step_name],
        )

    @classmethod
    def tool_result(
        cls,
        handler_slug: str,
        tool_name: str,
        result: Any,
        *,
        parent: Optional["DataPacket"] = None,
        success: bool = True,
        handler_complete: bool = True,
        step_name: Optional[str] = None,
        extra_metadata: Optional[Mapping[str, Any]] = None,
    ) -> "DataPacket":
        """Entry recording that an AI step executed ``handler_slug``'s tool.

        ``handler_complete`` distinguishes a handler tool that did the
        downstream work (``ai_handler_complete``) from a plain tool call
        (``tool_result``).
        """
        metadata: Dict[str, Any] = dict(parent.identity) if parent else {}
        metadata.update(
            {
                "handler_tool": handler_slug,
                "tool_name": tool_name,
                "tool_result": result,
                "tool_success": success,
            }
        )
        metadata = merge_metadata(metadata, extra_metadata)
        history = list(parent.processing_steps) if parent else []
        if step_name:
            history.append(step_name)
        return cls(
            type=HANDLER_COMPLETE_PACKET if handler_complete else TOOL_RESULT_PACKET,
            title=f"Handler Tool Executed: {tool_name}",
            content=PacketContent(body=f"Tool {tool_name} executed for {handler_slug}"),
            source_type=parent.source_type if parent else "unknown",
            metadata=metadata,
            processing_steps=history,
        )

"""Pydantic models describing registry entities."""

from __future__ import annotations

import inspect
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class HandlerDescriptor(BaseModel):
    """Metadata and implementation reference for one step handler."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    # Identity
    step_type: str
    slug: str
    label: Optional[str] = None

    # Contract
    settings_schema: Any = None
    requires_auth: bool = False
    requires_tool_result: bool = False

    # Handler class (instantiated per job) or ready-made instance
    implementation: Any = Field(..., exclude=True)

    @field_validator("step_type", "slug")
    @classmethod
    def _ensure_non_empty(cls, v: str) -> str:
        if not v:
            raise ValueError("step_type and slug must be non-empty strings")
        return v

    def create_handler(self) -> Any:
        """Return a handler instance ready to execute."""
        if inspect.isclass(self.implementation):
            return self.implementation()
        return self.implementation

    @property
    def display_label(self) -> str:
        return self.label or self.slug

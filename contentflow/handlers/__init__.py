"""Step handler contract."""

from .base import HandlerResult, ProcessedItemsView, StepContext, StepHandler

__all__ = ["HandlerResult", "ProcessedItemsView", "StepContext", "StepHandler"]

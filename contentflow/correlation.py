"""Locate the result of an upstream AI tool call for a given handler."""

from __future__ import annotations

from typing import Optional, Sequence

from .packets import DataPacket


def find_handler_result_index(
    packets: Sequence[DataPacket], handler_slug: str
) -> Optional[int]:
    """Position of the first tool result answering ``handler_slug``."""
    for index, packet in enumerate(packets):
        if packet.is_tool_result and packet.handler_tool == handler_slug:
            return index
    return None


def find_handler_result(
    packets: Sequence[DataPacket], handler_slug: str
) -> Optional[DataPacket]:
    """Return the first ``tool_result``/``ai_handler_complete`` packet whose
    ``handler_tool`` metadata equals ``handler_slug``.

    Packets are scanned in insertion order, so the earliest matching result
    always wins. ``None`` means the upstream step did not produce a result for
    this handler; callers fail their own step rather than guess.
    """
    index = find_handler_result_index(packets, handler_slug)
    return packets[index] if index is not None else None

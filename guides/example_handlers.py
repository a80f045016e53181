"""Example handlers: read markdown files, summarize them and write JSON lines.

Point ``handler_modules`` in config.yaml at this module to use them:

    handler_modules:
      - guides.example_handlers
"""

import json
from pathlib import Path

from contentflow import DataPacket, StepFailure, StepHandler, register_handler
from contentflow.packets import PacketContent


@register_handler("fetch", "markdown_dir", label="Markdown directory")
class MarkdownDirectoryFetch(StepHandler):
    """Emit one packet per new ``*.md`` file in ``settings.path``."""

    async def execute(self, context, packets):
        directory = Path(context.settings["path"])
        if not directory.is_dir():
            raise StepFailure(f"{directory} is not a directory")

        produced = []
        for path in sorted(directory.glob("*.md")):
            if await context.processed_items.has("markdown", path.name):
                continue
            await context.processed_items.mark("markdown", path.name)
            text = path.read_text()
            title = text.splitlines()[0].lstrip("# ") if text else path.stem
            produced.append(
                DataPacket(
                    title=title,
                    content=PacketContent(body=text),
                    source_type="markdown",
                    metadata={
                        "source_url": path.resolve().as_uri(),
                        "item_identifier": path.name,
                    },
                )
            )
        return produced


@register_handler("process", "summarize", label="First paragraph summary")
class FirstParagraphSummary(StepHandler):
    def execute(self, context, packets):
        limit = int(context.settings.get("max_chars", 280))
        summaries = []
        for packet in packets:
            if packet.type != "data":
                continue
            paragraphs = [p for p in packet.body.split("\n\n") if p.strip()]
            summary = paragraphs[1] if len(paragraphs) > 1 else packet.body
            summaries.append(
                packet.derive(
                    context.step.name,
                    body=summary[:limit],
                    metadata={"summary_chars": min(len(summary), limit)},
                )
            )
        return summaries


@register_handler("publish", "jsonl", label="JSON lines file")
class JsonLinesPublish(StepHandler):
    """Append the latest packet per source item to ``settings.output``."""

    def execute(self, context, packets):
        latest = {}
        for packet in packets:
            if packet.type == "data":
                latest[packet.metadata.get("item_identifier")] = packet

        output = Path(context.settings["output"])
        output.parent.mkdir(parents=True, exist_ok=True)
        with output.open("a") as f:
            for packet in latest.values():
                f.write(
                    json.dumps(
                        {
                            "title": packet.title,
                            "body": packet.body,
                            "source_url": packet.metadata.get("source_url"),
                            "steps": packet.processing_steps,
                        }
                    )
                    + "\n"
                )
        return [
            packet.derive(context.step.name, metadata={"published_to": str(output)})
            for packet in latest.values()
        ]

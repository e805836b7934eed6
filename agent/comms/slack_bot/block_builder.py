import re
from typing import Any, Dict, List, Sequence

import structlog

from shared.schemas.blocks import (
    ActionsBlock,
    ContextBlock,
    DividerBlock,
    HeaderBlock,
    ImageBlock,
    MarkdownBlock,
    SectionBlock,
    SlackBlock,
)

logger = structlog.get_logger()


class BlockBuilder:
    """Convert typed block models into Slack Block Kit payloads.

    Slack enforces per-element character limits; text over the limit is
    truncated rather than rejected by the API.
    """

    SECTION_TEXT_LIMIT = 3_000
    HEADER_TEXT_LIMIT = 150
    MARKDOWN_TEXT_LIMIT = 12_000

    @staticmethod
    def to_payload(blocks: Sequence[SlackBlock]) -> List[Dict[str, Any]]:
        """Render blocks in order. Unknown block types are a programming error."""
        return [BlockBuilder._render(block) for block in blocks]

    @staticmethod
    def plain_text_fallback(text: str, max_len: int = 200) -> str:
        """Strip markdown formatting for the plain-text notification fallback."""
        if not text:
            return ""
        plain = text
        # Remove markdown images
        plain = re.sub(r"!\[.*?\]\(.*?\)", "", plain)
        # Convert links to just the label
        plain = re.sub(r"\[(.*?)\]\(.*?\)", r"\1", plain)
        # Slack mrkdwn links: <url|label>
        plain = re.sub(r"<[^|>]+\|([^>]+)>", r"\1", plain)
        # Strip bold/italic markers
        plain = re.sub(r"\*{1,2}(.*?)\*{1,2}", r"\1", plain)
        plain = re.sub(r"^#{1,6}\s+", "", plain, flags=re.MULTILINE)
        plain = re.sub(r"\n{2,}", "\n", plain).strip()
        if len(plain) > max_len:
            plain = plain[: max_len - 1] + "…"
        return plain

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _text(text: str, markdown: bool = True, limit: int = SECTION_TEXT_LIMIT) -> Dict[str, Any]:
        if len(text) > limit:
            logger.debug("block_text_truncated", length=len(text), limit=limit)
            text = text[: limit - 1] + "…"
        if markdown:
            return {"type": "mrkdwn", "text": text}
        return {"type": "plain_text", "text": text, "emoji": True}

    @staticmethod
    def _render(block: SlackBlock) -> Dict[str, Any]:
        if isinstance(block, SectionBlock):
            payload: Dict[str, Any] = {
                "type": "section",
                "text": BlockBuilder._text(block.text, block.markdown),
            }
            if block.fields:
                payload["fields"] = [BlockBuilder._text(f) for f in block.fields]
            return payload
        if isinstance(block, HeaderBlock):
            return {
                "type": "header",
                "text": BlockBuilder._text(
                    block.text, markdown=False, limit=BlockBuilder.HEADER_TEXT_LIMIT
                ),
            }
        if isinstance(block, DividerBlock):
            return {"type": "divider"}
        if isinstance(block, ContextBlock):
            return {
                "type": "context",
                "elements": [BlockBuilder._text(e) for e in block.elements],
            }
        if isinstance(block, ActionsBlock):
            elements = []
            for button in block.buttons:
                element: Dict[str, Any] = {
                    "type": "button",
                    "text": BlockBuilder._text(button.text, markdown=False, limit=75),
                    "action_id": button.action_id,
                }
                if button.value is not None:
                    element["value"] = button.value
                if button.url is not None:
                    element["url"] = button.url
                if button.style is not None:
                    element["style"] = button.style
                elements.append(element)
            return {"type": "actions", "elements": elements}
        if isinstance(block, ImageBlock):
            payload = {
                "type": "image",
                "image_url": block.image_url,
                "alt_text": block.alt_text,
            }
            if block.title:
                payload["title"] = BlockBuilder._text(block.title, markdown=False)
            return payload
        if isinstance(block, MarkdownBlock):
            text = block.text
            if len(text) > BlockBuilder.MARKDOWN_TEXT_LIMIT:
                text = text[: BlockBuilder.MARKDOWN_TEXT_LIMIT - 1] + "…"
            return {"type": "markdown", "text": text}
        raise TypeError(f"Unsupported block type: {type(block).__name__}")

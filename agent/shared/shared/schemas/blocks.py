"""Structured Slack block payloads as a tagged union."""

from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field


class SectionBlock(BaseModel):
    type: Literal["section"] = "section"
    text: str
    markdown: bool = True
    fields: list[str] = []


class HeaderBlock(BaseModel):
    type: Literal["header"] = "header"
    text: str


class DividerBlock(BaseModel):
    type: Literal["divider"] = "divider"


class ContextBlock(BaseModel):
    type: Literal["context"] = "context"
    elements: list[str]


class ButtonElement(BaseModel):
    text: str
    action_id: str
    value: str | None = None
    url: str | None = None
    style: Literal["primary", "danger"] | None = None


class ActionsBlock(BaseModel):
    type: Literal["actions"] = "actions"
    buttons: list[ButtonElement]


class ImageBlock(BaseModel):
    type: Literal["image"] = "image"
    image_url: str
    alt_text: str
    title: str | None = None


class MarkdownBlock(BaseModel):
    type: Literal["markdown"] = "markdown"
    text: str


SlackBlock = Annotated[
    Union[
        SectionBlock,
        HeaderBlock,
        DividerBlock,
        ContextBlock,
        ActionsBlock,
        ImageBlock,
        MarkdownBlock,
    ],
    Field(discriminator="type"),
]

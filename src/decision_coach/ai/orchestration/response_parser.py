"""Parse the model's tagged reply envelope into text, blocks and actions.

The model is asked to answer in this shape::

    <diagnostics>free-form routing notes</diagnostics>
    <response>
      <assistant_text>...</assistant_text>
      <blocks><block><type>commentary</type><title/><content/></block></blocks>
      <suggested_actions><action><role/><label/><message/></action></suggested_actions>
    </response>

Parsing is best effort. Anything the parser has to repair or drop is reported in
``parse_warnings`` rather than raised.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

from .types import ConversationBlock, SuggestedAction

__all__ = [
    "MAX_SUGGESTED_ACTIONS",
    "ParsedResponse",
    "extract_fact_citations",
    "parse_model_reply",
    "unescape_xml_entities",
]

MAX_SUGGESTED_ACTIONS = 2
ALLOWED_BLOCK_TYPES = ("commentary", "review_card")
ALLOWED_ROLES = ("facilitator", "challenger")

_XML_ENTITIES = (
    ("&lt;", "<"),
    ("&gt;", ">"),
    ("&quot;", '"'),
    ("&apos;", "'"),
    ("&amp;", "&"),
)
_FACT_ID_PATTERN = re.compile(r"\bf_[A-Za-z0-9_]+\b")


def _tag_pattern(tag: str) -> re.Pattern[str]:
    return re.compile(rf"<{tag}>(.*?)</{tag}>", re.DOTALL)


_DIAGNOSTICS = _tag_pattern("diagnostics")
_RESPONSE = _tag_pattern("response")
_ASSISTANT_TEXT = _tag_pattern("assistant_text")
_BLOCKS = _tag_pattern("blocks")
_BLOCK = _tag_pattern("block")
_ACTIONS = _tag_pattern("suggested_actions")
_ACTION = _tag_pattern("action")


@dataclass(slots=True, frozen=True)
class ParsedResponse:
    assistant_text: str
    diagnostics: str | None = None
    blocks: tuple[ConversationBlock, ...] = ()
    suggested_actions: tuple[SuggestedAction, ...] = ()
    cited_fact_ids: tuple[str, ...] = ()
    parse_warnings: tuple[str, ...] = ()


def unescape_xml_entities(text: str) -> str:
    """Unescape the five predefined XML entities. ``&amp;`` is handled last."""

    for entity, char in _XML_ENTITIES:
        text = text.replace(entity, char)
    return text


def extract_fact_citations(text: str) -> tuple[str, ...]:
    """Return fact ids cited in ``text`` in first-seen order, without duplicates."""

    seen: dict[str, None] = {}
    for match in _FACT_ID_PATTERN.finditer(text or ""):
        seen.setdefault(match.group(0), None)
    return tuple(seen)


def _first(pattern: re.Pattern[str], text: str) -> str | None:
    match = pattern.search(text)
    if match is None:
        return None
    return match.group(1).strip()


def parse_model_reply(raw: str | None) -> ParsedResponse:
    """Parse ``raw`` model output. Pure and never raises."""

    warnings: list[str] = []
    text = (raw or "").strip()
    if not text:
        return ParsedResponse(assistant_text="", parse_warnings=("Empty or whitespace-only input",))

    diagnostics = _first(_DIAGNOSTICS, text)
    remainder = _DIAGNOSTICS.sub("", text).strip()

    body = _first(_RESPONSE, remainder)
    if body is None:
        if "<response>" in remainder:
            warnings.append("Unclosed <response> tag; treating as plain text")
        else:
            warnings.append("No <response> envelope found; treating as plain text")
        plain = _strip_tags(remainder)
        return ParsedResponse(
            assistant_text=unescape_xml_entities(plain),
            diagnostics=diagnostics,
            cited_fact_ids=extract_fact_citations(plain),
            parse_warnings=tuple(warnings),
        )

    assistant_text = _first(_ASSISTANT_TEXT, body)
    if assistant_text is None:
        warnings.append("<response> present but <assistant_text> missing")
        assistant_text = ""
    assistant_text = unescape_xml_entities(assistant_text)

    blocks = _parse_blocks(_first(_BLOCKS, body) or "", warnings)
    actions = _parse_actions(_first(_ACTIONS, body) or "", warnings)

    return ParsedResponse(
        assistant_text=assistant_text,
        diagnostics=diagnostics,
        blocks=blocks,
        suggested_actions=actions,
        cited_fact_ids=extract_fact_citations(assistant_text),
        parse_warnings=tuple(warnings),
    )


def _strip_tags(text: str) -> str:
    return re.sub(r"</?[a-z_]+>", "", text).strip()


def _parse_blocks(section: str, warnings: list[str]) -> tuple[ConversationBlock, ...]:
    blocks: list[ConversationBlock] = []
    for match in _BLOCK.finditer(section):
        fragment = match.group(1)
        block_type = _first(_tag_pattern("type"), fragment)
        if not block_type:
            warnings.append("Block missing <type> tag; dropped")
            continue
        if block_type not in ALLOWED_BLOCK_TYPES:
            warnings.append(f'Unknown block type "{block_type}"; dropped')
            continue
        content = _first(_tag_pattern("content"), fragment)
        if not content:
            warnings.append(f'Block of type "{block_type}" missing <content>; dropped')
            continue
        data: dict[str, Any] = {"content": unescape_xml_entities(content)}
        title = _first(_tag_pattern("title"), fragment)
        if title:
            data["title"] = unescape_xml_entities(title)
        if block_type == "review_card":
            tone = _first(_tag_pattern("tone"), fragment)
            data["tone"] = tone if tone in ALLOWED_ROLES else "facilitator"
        blocks.append(ConversationBlock.create(block_type, data))
    return tuple(blocks)


def _parse_actions(section: str, warnings: list[str]) -> tuple[SuggestedAction, ...]:
    actions: list[SuggestedAction] = []
    for match in _ACTION.finditer(section):
        fragment = match.group(1)
        label = _first(_tag_pattern("label"), fragment)
        message = _first(_tag_pattern("message"), fragment)
        if not label or not message:
            missing = "label" if not label else "message"
            warnings.append(f"Action missing required <{missing}>; dropped")
            continue
        role = _first(_tag_pattern("role"), fragment)
        if role not in ALLOWED_ROLES:
            warnings.append(f'Action role "{role or "(missing)"}" invalid; defaulted to facilitator')
            role = "facilitator"
        actions.append(
            SuggestedAction(
                label=unescape_xml_entities(label),
                prompt=unescape_xml_entities(message),
                role=role,  # type: ignore[arg-type]
            )
        )
    if len(actions) > MAX_SUGGESTED_ACTIONS:
        warnings.append(f"More than {MAX_SUGGESTED_ACTIONS} suggested actions; truncated to {MAX_SUGGESTED_ACTIONS}")
        actions = actions[:MAX_SUGGESTED_ACTIONS]
    return tuple(actions)

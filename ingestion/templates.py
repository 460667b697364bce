"""Anki card template rendering.

Supported grammar::

    {{field}}                 field value
    {{#field}}...{{/field}}   block shown when the field is non-empty
    {{^field}}...{{/field}}   block shown when the field is empty
    {{FrontSide}}             rendered front (back templates only)
    {{hint:field}}            collapsible hint
    {{text:field}}            field value with markup stripped
    [sound:file.mp3]          audio player

Rendering is deterministic: the same template and fields always produce the
same output.
"""

import html
import logging
import re
from collections.abc import Callable, Mapping

from ingestion.constants import MAX_CONDITIONAL_PASSES

logger = logging.getLogger(__name__)

_FRONT_SIDE = "{{FrontSide}}"
_FIELD_RE = re.compile(r"\{\{(?!FrontSide\}\})([^#^/{}:][^{}:]*)\}\}")
_POSITIVE_RE = re.compile(r"\{\{#([^{}]+)\}\}(.*?)\{\{/\1\}\}", re.DOTALL)
_NEGATIVE_RE = re.compile(r"\{\{\^([^{}]+)\}\}(.*?)\{\{/\1\}\}", re.DOTALL)
_HINT_RE = re.compile(r"\{\{hint:([^{}]+)\}\}")
_TEXT_RE = re.compile(r"\{\{text:([^{}]+)\}\}")
_SOUND_RE = re.compile(r"\[sound:([^\]]+)\]")
_TAG_RE = re.compile(r"<[^>]*>")

_SCRIPT_RE = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)
_UNSAFE_RE = re.compile(r"javascript:|\bon\w+\s*=", re.IGNORECASE)


def strip_tags(value: str) -> str:
    """Remove HTML tags from a field value."""
    return _TAG_RE.sub("", value)


def sanitize_html(value: str) -> str:
    """Drop script blocks, ``javascript:`` URLs and inline ``on*=`` event handlers."""
    value = _SCRIPT_RE.sub("", value)
    return _UNSAFE_RE.sub("", value)


def _render_hint(field: str, value: str) -> str:
    if not value:
        return ""
    return f'<details class="hint"><summary>{html.escape(field)}</summary>{value}</details>'


def _render_sound(match: re.Match) -> str:
    src = html.escape(match.group(1), quote=True)
    return f'<audio controls><source src="{src}" type="audio/mpeg"></audio>'


def _expand_conditionals(result: str, value_of: Callable[[str], str]) -> str:
    def positive(m: re.Match) -> str:
        return m.group(2) if value_of(m.group(1)).strip() else ""

    def negative(m: re.Match) -> str:
        return "" if value_of(m.group(1)).strip() else m.group(2)

    # Nested blocks of either kind are exposed one layer per pass
    for _ in range(MAX_CONDITIONAL_PASSES):
        expanded = _NEGATIVE_RE.sub(negative, _POSITIVE_RE.sub(positive, result))
        if expanded == result:
            return result
        result = expanded
    logger.warning("Conditional expansion stopped after %d passes", MAX_CONDITIONAL_PASSES)
    return result


def render_template(template: str, fields: Mapping[str, str], front_side: str = "") -> str:
    """Expand an Anki template against a field map.

    Unknown fields render as empty strings. ``{{FrontSide}}`` is replaced by
    ``front_side`` after everything else, so the front is inserted as-is.
    """
    if not template:
        return ""

    def value_of(name: str) -> str:
        return fields.get(name.strip(), "") or ""

    result = _FIELD_RE.sub(lambda m: value_of(m.group(1)), template)
    result = _expand_conditionals(result, value_of)
    result = _HINT_RE.sub(lambda m: _render_hint(m.group(1).strip(), value_of(m.group(1))), result)
    result = _SOUND_RE.sub(_render_sound, result)
    result = _TEXT_RE.sub(lambda m: strip_tags(value_of(m.group(1))), result)
    return result.replace(_FRONT_SIDE, front_side)


def render_card(front_template: str, back_template: str, fields: Mapping[str, str]) -> tuple[str, str]:
    """Render both sides; ``{{FrontSide}}`` on the back becomes the rendered front."""
    front = render_template(front_template, fields)
    back = render_template(back_template, fields, front_side=front)
    return front, back

"""Summaries of the card templates found in a parsed collection."""

from collections.abc import Iterable
from dataclasses import dataclass, field

from ingestion.collection import ParsedCard
from ingestion.constants import SAMPLES_PER_TEMPLATE
from ingestion.templates import render_card, sanitize_html


@dataclass
class TemplateSample:
    front: str
    back: str


@dataclass
class TemplateSummary:
    """One distinct template, shown to the caller before choosing what to import."""

    name: str
    question_format: str
    answer_format: str
    fields: list[str] = field(default_factory=list)
    card_count: int = 0
    samples: list[TemplateSample] = field(default_factory=list)


def analyze_templates(cards: Iterable[ParsedCard]) -> list[TemplateSummary]:
    """Group cards by template name, in first-seen order."""
    summaries: dict[str, TemplateSummary] = {}
    for card in cards:
        summary = summaries.get(card.template.name)
        if summary is None:
            summary = TemplateSummary(
                name=card.template.name,
                question_format=card.template.question_format,
                answer_format=card.template.answer_format,
            )
            summaries[card.template.name] = summary
        summary.card_count += 1
        for name in card.fields:
            if name not in summary.fields:
                summary.fields.append(name)
        if len(summary.samples) < SAMPLES_PER_TEMPLATE:
            front, back = render_card(card.template.question_format, card.template.answer_format, card.fields)
            summary.samples.append(TemplateSample(front=sanitize_html(front), back=sanitize_html(back)))
    return list(summaries.values())

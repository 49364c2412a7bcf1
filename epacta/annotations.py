from __future__ import annotations

import re

from epacta.models import EpactaMetadata, ExternalLink


FIELD_SEPARATOR = " / "
PREFACIO_SEPARATOR = " - "
DEFAULT_LINK_TEXT = "Enlace"

FLORES_PATTERN = re.compile(r"flo", re.IGNORECASE)
BRACKET_PATTERN = re.compile(r"\[(.*?)\]")
LINK_PATTERN = re.compile(r"<a\s+(?:[^>]*?\s+)?href=\"([^\"]*)\"[^>]*>(.*?)</a>", re.IGNORECASE)


def _contains(text: str, keyword: str) -> bool:
    return keyword in text.lower()


def _split_fields(description: str) -> list[str]:
    # ICS folding can break a tag in two, so line breaks are joined with a space.
    flattened = description.replace("\r\n", " ").replace("\n", " ").replace("\r", " ")
    # " / " and not "/" so that URLs survive the split.
    return [part.strip() for part in flattened.split(FIELD_SEPARATOR)]


def _apply_color(metadata: EpactaMetadata, color_field: str) -> None:
    if _contains(color_field, "flo"):
        metadata.flores = True
        color_field = FLORES_PATTERN.sub("", color_field).strip()
    metadata.color = color_field


def _apply_prefacio(metadata: EpactaMetadata, chunk: str) -> None:
    segments = chunk.split(PREFACIO_SEPARATOR)
    if len(segments) > 1:
        metadata.plegaria = segments[-1]
        metadata.prefacio = PREFACIO_SEPARATOR.join(segments[:-1])
    else:
        metadata.prefacio = chunk


def _apply_otro(metadata: EpactaMetadata, item: str) -> None:
    if _contains(item, "exsol") or _contains(item, "exso"):
        metadata.exposicion = "Solemne"
        return
    if _contains(item, "exsi"):
        metadata.exposicion = "Simple"
        return
    if _contains(item, "flo"):
        metadata.flores = True
        return
    if _contains(item, "consagrar viril"):
        metadata.alerts.append(item)
        return

    for captured in BRACKET_PATTERN.findall(item):
        if captured.strip():
            metadata.alerts.append(captured.strip())
    remaining = BRACKET_PATTERN.sub("", item).strip()

    link_match = LINK_PATTERN.search(remaining)
    if link_match:
        metadata.external_links.append(
            ExternalLink(url=link_match.group(1), text=link_match.group(2) or DEFAULT_LINK_TEXT)
        )
    elif remaining:
        # <b>, <i> and <br> are left for the presentation layer.
        metadata.otros.append(remaining)


def parse_epacta_description(description: str | None) -> EpactaMetadata:
    metadata = EpactaMetadata()
    if not description:
        return metadata

    fields = _split_fields(description)

    _apply_color(metadata, fields[0])
    if len(fields) > 1:
        metadata.misal = fields[1]
    if len(fields) > 2:
        metadata.leccionario = fields[2]
    if len(fields) > 3:
        _apply_prefacio(metadata, fields[3])

    if len(fields) > 4:
        metadata.alerts = []
        metadata.external_links = []
        metadata.otros = []
        for item in fields[4:]:
            _apply_otro(metadata, item)

    return metadata

"""practice_etl.sections

Split a combined legacy export document into named sections.

The exporter concatenated one table per entity type, each introduced by
a marker line:

    === CLIENTS ===
    id,company_name,email
    ...
    === PROJECTS ===
    ...

Every line belongs to exactly one section or to the discarded preamble
before the first marker.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

log = logging.getLogger(__name__)

MARKER_RE = re.compile(r"^===\s*(\S(?:.*\S)?)\s*===$")


@dataclass
class Section:
    name: str
    lines: list[str] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "\n".join(self.lines)

    def is_empty(self) -> bool:
        return not any(ln.strip() for ln in self.lines)


def marker_name(line: str) -> str | None:
    """Return the section name if line is a '=== NAME ===' marker."""
    m = MARKER_RE.match(line.strip())
    return m.group(1) if m else None


def split_sections(text: str) -> list[Section]:
    """Return sections in encounter order; repeated names stay separate."""
    sections: list[Section] = []
    current: Section | None = None
    preamble = 0

    for raw in text.lstrip("\ufeff").split("\n"):
        line = raw.rstrip("\r")
        name = marker_name(line)
        if name is not None:
            current = Section(name)
            sections.append(current)
        elif current is None:
            if line.strip():
                preamble += 1
        else:
            current.lines.append(line)

    if preamble:
        log.debug("Discarded %d preamble line(s) before the first marker", preamble)
    return sections


def extract_sections(
    text: str,
    default_section: str | None = None,
) -> dict[str, str]:
    """Map section name → raw text block.

    Repeated section names are concatenated in encounter order.  When the
    document has no markers at all and default_section is given, the whole
    document is returned as that one section.
    """
    parts = split_sections(text)
    if not parts and default_section:
        return {default_section: text.lstrip("\ufeff")}

    merged: dict[str, Section] = {}
    for section in parts:
        if section.name in merged:
            merged[section.name].lines.extend(section.lines)
        else:
            merged[section.name] = Section(section.name, list(section.lines))
    return {name: section.text for name, section in merged.items()}

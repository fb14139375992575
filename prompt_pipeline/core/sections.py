"""
Section marker codec for combined pipeline output.

Each section is wrapped as::

    <!-- SECTION_START: label -->
    content
    <!-- SECTION_END: label -->

so a stored plan can later be split back into its labelled sections.
"""

import re
from dataclasses import dataclass
from typing import Iterable, List


@dataclass(frozen=True)
class Section:
    """Labelled output of one successful prompt."""
    label: str
    content: str


_SECTION_PATTERN = re.compile(
    r"<!-- SECTION_START: (?P<label>.+?) -->\n(?P<content>.*?)\n<!-- SECTION_END: (?P=label) -->",
    re.DOTALL
)
_MARKER_PATTERN = re.compile(r"<!--\s*SECTION_(?:START|END):[^>]*-->")
_BLANK_RUN_PATTERN = re.compile(r"\n\s*\n\s*\n")


def validate_label(label: str) -> None:
    """Reject labels that cannot round-trip through the markers."""
    if not label or not label.strip():
        raise ValueError("label cannot be empty")
    if "\n" in label or "-->" in label:
        raise ValueError(f"label cannot contain newlines or '-->': {label!r}")


def combine_with_markers(sections: Iterable[Section]) -> str:
    """Join sections wrapped in start/end markers, for durable storage."""
    return "\n\n".join(
        f"<!-- SECTION_START: {s.label} -->\n{s.content}\n<!-- SECTION_END: {s.label} -->"
        for s in sections
    )


def combine_plain(sections: Iterable[Section]) -> str:
    """Join section contents with blank lines, for display and export."""
    return "\n\n".join(s.content for s in sections)


def parse_sections(text: str) -> List[Section]:
    """Split marked-up text back into sections, in order."""
    return [
        Section(label=m.group("label"), content=m.group("content"))
        for m in _SECTION_PATTERN.finditer(text or "")
    ]


def strip_section_markers(text: str) -> str:
    """Remove all section markers and collapse the blank lines they leave."""
    if not text:
        return ""
    stripped = _MARKER_PATTERN.sub("", text)
    return _BLANK_RUN_PATTERN.sub("\n\n", stripped).strip()

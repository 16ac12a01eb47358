from __future__ import annotations

import re
from typing import Any

from blackletter_core.models import Citation

# p.23 / pp.12-15 / page 4 / pages 4-6 / 7 / 7-9
_PAGE_REF_RE = re.compile(
    r"^(?:(?:pp?|pages?)\s*\.?\s*)?(\d+)(?:\s*[-–—]\s*(\d+))?$",
    re.IGNORECASE,
)


def parse_citation(token: str) -> Citation | None:
    label = " ".join(token.split())
    if not label:
        return None
    m = _PAGE_REF_RE.match(label)
    if not m:
        return None
    first = int(m.group(1))
    last = int(m.group(2)) if m.group(2) else first
    if first <= 0 or last < first:
        return None
    return Citation(label=label, first_page=first, last_page=last)


def parse_citations(raw: Any) -> list[Citation]:
    """
    Split a source string such as "pp.12-15, p.23" into citation chips.

    Order is preserved. Empty and malformed tokens are dropped.
    """
    if isinstance(raw, str):
        tokens = raw.split(",")
    elif isinstance(raw, (list, tuple)):
        tokens = [t for t in raw if isinstance(t, str)]
    else:
        return []

    citations: list[Citation] = []
    for token in tokens:
        citation = parse_citation(token)
        if citation is not None:
            citations.append(citation)
    return citations

"""
Page-break continuation heuristic.

Statements often split one transaction's description across a page break.
The model may emit the spill-over as its own zero-amount line item; this
predicate decides whether such a line is really a fragment of the previous
transaction. Best effort: some short legitimate descriptions will match.
"""
import re

_PATTERNS = (
    re.compile(r"^[A-Z]{2,}[-\s]"),       # bank code, e.g. "SW-" or "MCBKCWCU "
    re.compile(r"^\d+\s+\w"),            # street number
    re.compile(r"^[A-Z][a-z]+\s+[A-Z]"),  # "Name Address"
)

CONTINUATION_KEYWORDS = ("MOBILEWEB", "United States", "United Kingdom")


def looks_like_continuation(description: str) -> bool:
    if not description:
        return False
    if any(p.match(description) for p in _PATTERNS):
        return True
    return any(k in description for k in CONTINUATION_KEYWORDS)

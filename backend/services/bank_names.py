"""Bank name normalization. Maps free-text bank names to a canonical name and a rule lookup key."""
import json
import os
import re
from types import MappingProxyType

UNKNOWN_BANK = "Unknown Bank"

_ALIAS_FILE = os.path.join(os.path.dirname(os.path.abspath(__file__)), "bank_aliases.json")


def _clean(name: str) -> str:
    """lowercase, drop anything that isn't [a-z0-9 ], collapse whitespace"""
    cleaned = re.sub(r"[^a-z0-9\s]", "", name.lower())
    return re.sub(r"\s+", " ", cleaned).strip()


def _load_aliases(path: str = _ALIAS_FILE) -> MappingProxyType:
    with open(path, encoding="utf-8") as f:
        raw = json.load(f)
    lookup = {}
    for canonical, variants in raw.items():
        for variant in [canonical, *variants]:
            lookup.setdefault(_clean(variant), canonical)
    return MappingProxyType(lookup)


# normalized variant -> canonical name, loaded once at import
BANK_ALIASES = _load_aliases()


def normalize_bank_name(bank_name: str) -> str:
    """Return the canonical name for a bank, or a title-cased best effort."""
    if not bank_name or not bank_name.strip():
        return UNKNOWN_BANK

    canonical = BANK_ALIASES.get(_clean(bank_name))
    if canonical:
        return canonical

    return " ".join(word[:1].upper() + word[1:].lower() for word in bank_name.strip().split())


def get_bank_identifier(bank_name: str) -> str:
    """Stable ``[a-z0-9_]+`` key used to look up parsing rules."""
    canonical = normalize_bank_name(bank_name)
    identifier = re.sub(r"[^a-z0-9]", "_", canonical.lower())
    identifier = re.sub(r"_+", "_", identifier).strip("_")
    return identifier or "unknown_bank"

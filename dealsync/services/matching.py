from __future__ import annotations

from dataclasses import dataclass, field
import logging
import re
from typing import Iterable

from dealsync.domain.records import ExternalRecord


logger = logging.getLogger(__name__)

_COUNTER_SUFFIX = re.compile(r"\s*\(\d+\)\s*$")
# "NY25202 - LST 207", "NY25202 LST 207"; the code may be any case.
_CODE_LABEL = re.compile(r"^([A-Z]+\d+)\s*[-\s]+\s*(.+)$", re.IGNORECASE)
# "NY25202LST"; uppercase only so a normalized key never re-splits.
_COMPACT_CODE_LABEL = re.compile(r"^([A-Z]+\d+)([A-Za-z].*)$")
_NON_ALNUM = re.compile(r"[^a-zA-Z0-9]+")


def _squash(value: str) -> str:
    return _NON_ALNUM.sub("", value.lower())


def canonical_key(title: str | None) -> str:
    """Reduce a human-entered deal or quote title to its cross-platform join key.

    ``"NY25202 - LST 207 RSS ENDURANCE (2)"`` becomes
    ``"ny25202-lst207rssendurance"``. Titles without a leading job code fall
    back to the whole title, lowercased with non-alphanumerics removed.
    Applying the function to its own output returns the output unchanged.
    """
    if not title:
        return ""
    stripped = _COUNTER_SUFFIX.sub("", title).strip()
    match = _CODE_LABEL.match(stripped) or _COMPACT_CODE_LABEL.match(stripped)
    if match:
        code, label = match.group(1), _squash(match.group(2))
        if label:
            return f"{code.lower()}-{label}"
    return _squash(stripped)


@dataclass
class CrossReference:
    matched: list[tuple[ExternalRecord, ExternalRecord]] = field(default_factory=list)
    a_only: list[ExternalRecord] = field(default_factory=list)
    b_only: list[ExternalRecord] = field(default_factory=list)
    # Records displaced by a later record with the same key on the same side.
    shadowed: list[ExternalRecord] = field(default_factory=list)
    _by_a_id: dict[str, ExternalRecord] = field(default_factory=dict, repr=False)

    def match_for(self, record_id: str) -> ExternalRecord | None:
        return self._by_a_id.get(record_id)


def _index(
    records: Iterable[ExternalRecord], shadowed: list[ExternalRecord]
) -> tuple[dict[str, ExternalRecord], list[ExternalRecord]]:
    # Last write wins on duplicate keys; keyless records can never match.
    index: dict[str, ExternalRecord] = {}
    keyless: list[ExternalRecord] = []
    for record in records:
        if not record.canonical_key:
            keyless.append(record)
            continue
        previous = index.get(record.canonical_key)
        if previous is not None:
            shadowed.append(previous)
            logger.info(
                "canonical_key_duplicate platform=%s key=%s kept=%s dropped=%s",
                record.platform,
                record.canonical_key,
                record.record_id,
                previous.record_id,
            )
        index[record.canonical_key] = record
    return index, keyless


def cross_reference(a_records: Iterable[ExternalRecord], b_records: Iterable[ExternalRecord]) -> CrossReference:
    """Partition two record sets into matched pairs and one-sided leftovers."""
    result = CrossReference()
    a_index, a_keyless = _index(a_records, result.shadowed)
    b_index, b_keyless = _index(b_records, result.shadowed)
    for key, a_record in a_index.items():
        b_record = b_index.get(key)
        if b_record is None:
            result.a_only.append(a_record)
        else:
            result.matched.append((a_record, b_record))
            result._by_a_id[a_record.record_id] = b_record
    result.b_only.extend(record for key, record in b_index.items() if key not in a_index)
    result.a_only.extend(a_keyless)
    result.b_only.extend(b_keyless)
    return result

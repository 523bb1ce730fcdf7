"""
Record sources for CSV and plain-text inputs.

Headers are matched case- and punctuation-insensitively ("Profile URL",
"profile_url" and "profileUrl" are the same column) and mapped onto
canonical field names through an alias table. Rows that fail validation are
still yielded, with ``invalid_reason`` set, so the run can count them as
skipped.
"""

from __future__ import annotations

import csv
import re
from pathlib import Path
from typing import Callable, Dict, Iterator, Mapping, Optional

from loguru import logger

from .coordinator.types import Record

Normalizer = Callable[[str], str]
Validator = Callable[[str], bool]

_NON_ALNUM = re.compile(r"[^a-z0-9]+")

# normalized header -> canonical field name
DEFAULT_ALIASES: Dict[str, str] = {
    "profileurl": "profile_url",
    "linkedinurl": "profile_url",
    "linkedinprofileurl": "profile_url",
    "personlinkedinurl": "profile_url",
    "companylinkedinurl": "company_linkedin_url",
    "companyurl": "company_linkedin_url",
    "companywebsite": "company_website",
    "website": "company_website",
    "firstname": "first_name",
    "lastname": "last_name",
    "email": "email",
    "emailaddress": "email",
    "emaildomain": "email_domain",
    "domain": "email_domain",
    "phone": "phone",
    "phonenumber": "phone",
}


class SourceError(ValueError):
    """Input file missing, unreadable, or lacking the key column."""


def normalize_header(header: object) -> str:
    return _NON_ALNUM.sub("", str(header or "").strip().lower())


def strip_key(value: str) -> str:
    return value.strip()


def looks_like_linkedin_url(value: str) -> bool:
    v = value.strip().lower()
    return v.startswith("https://www.linkedin.com/") or v.startswith("http://www.linkedin.com/")


def looks_like_email(value: str) -> bool:
    return re.fullmatch(r".+@.+\..+", value.strip()) is not None


class CsvRecordSource:
    """Iterate records from a CSV file keyed on one column.

    Example:
        source = CsvRecordSource("leads.csv", "Profile URL", validator=looks_like_linkedin_url)
        for record in source:
            ...
    """

    def __init__(
        self,
        path: str | Path,
        key_column: str,
        *,
        aliases: Optional[Mapping[str, str]] = None,
        normalizer: Normalizer = strip_key,
        validator: Optional[Validator] = None,
        encoding: str = "utf-8-sig",
    ):
        self.path = Path(path)
        self._aliases = dict(DEFAULT_ALIASES if aliases is None else aliases)
        self.key_field = self._canonical(key_column)
        self._normalizer = normalizer
        self._validator = validator
        self._encoding = encoding

    def _canonical(self, header: str) -> str:
        norm = normalize_header(header)
        return self._aliases.get(norm, norm)

    def __iter__(self) -> Iterator[Record]:
        if not self.path.exists():
            raise SourceError(f"input file not found: {self.path}")

        with self.path.open("r", encoding=self._encoding, newline="") as f:
            reader = csv.DictReader(f)
            headers = reader.fieldnames or []
            mapping = {h: self._canonical(h) for h in headers if h is not None}
            if self.key_field not in mapping.values():
                raise SourceError(
                    f"{self.path} has no column matching {self.key_field!r}. "
                    f"Found: {', '.join(headers)}"
                )

            rows = 0
            for row in reader:
                rows += 1
                fields = {
                    mapping[h]: (v or "").strip()
                    for h, v in row.items()
                    if h is not None and h in mapping and not isinstance(v, list)
                }
                yield self._record(fields.get(self.key_field, ""), fields, reader.line_num)
        logger.debug(f"Read {rows} rows from {self.path}")

    def _record(self, raw: str, fields: Dict[str, str], line: int) -> Record:
        key = self._normalizer(raw) if raw else ""
        reason: Optional[str] = None
        if not key:
            reason = f"empty {self.key_field}"
        elif self._validator is not None and not self._validator(key):
            reason = f"invalid {self.key_field}: {raw!r}"
        return Record(key=key, fields=fields, line=line, invalid_reason=reason)


class TextRecordSource:
    """One identifier per line; blank lines ignored."""

    def __init__(
        self,
        path: str | Path,
        *,
        field_name: str = "key",
        normalizer: Normalizer = strip_key,
        validator: Optional[Validator] = None,
        encoding: str = "utf-8-sig",
    ):
        self.path = Path(path)
        self.field_name = field_name
        self._normalizer = normalizer
        self._validator = validator
        self._encoding = encoding

    def __iter__(self) -> Iterator[Record]:
        if not self.path.exists():
            raise SourceError(f"input file not found: {self.path}")

        with self.path.open("r", encoding=self._encoding) as f:
            for lineno, line in enumerate(f, start=1):
                raw = line.strip()
                if not raw:
                    continue
                key = self._normalizer(raw)
                reason = None
                if not key:
                    reason = f"empty {self.field_name}"
                elif self._validator is not None and not self._validator(key):
                    reason = f"invalid {self.field_name}: {raw!r}"
                yield Record(key=key, fields={self.field_name: raw}, line=lineno, invalid_reason=reason)


def open_source(
    path: str | Path,
    key_column: str,
    *,
    validator: Optional[Validator] = None,
    normalizer: Normalizer = strip_key,
) -> CsvRecordSource | TextRecordSource:
    """Pick the adapter by file extension (.csv, anything else is text)."""
    p = Path(path)
    if p.suffix.lower() == ".csv":
        return CsvRecordSource(p, key_column, normalizer=normalizer, validator=validator)
    norm = normalize_header(key_column)
    return TextRecordSource(
        p,
        field_name=DEFAULT_ALIASES.get(norm, norm) or "key",
        normalizer=normalizer,
        validator=validator,
    )

"""
CertChain — Field Extraction

Pulls the legacy identifier (roll number) and the holder name out of
recognised text with labelled regular expressions.

Labels match case-insensitively and only at a word boundary ("Username:"
is not a name label). The name stops at the end of its line. The first
match of each label wins unless ``reject_conflicting_fields`` is set, in
which case a document carrying two different values for a label is
rejected.
"""

from __future__ import annotations

import re

from certchain.primitives.certificate import ExtractedDetails
from certchain.primitives.errors import ExtractionFailed

IDENTIFIER_MISSING_MESSAGE = "Could not extract identifier from the document."


class FieldExtractor:
    def __init__(
        self,
        identifier_pattern: str,
        name_pattern: str,
        reject_conflicting_fields: bool = False,
    ) -> None:
        self._identifier_re = re.compile(identifier_pattern, re.IGNORECASE)
        self._name_re = re.compile(name_pattern, re.IGNORECASE)
        self._strict = reject_conflicting_fields

    def extract(self, text: str) -> ExtractedDetails:
        identifiers = [m.group(1).strip() for m in self._identifier_re.finditer(text)]
        identifiers = [i for i in identifiers if i]
        names = [m.group(1).strip() for m in self._name_re.finditer(text)]
        names = [n for n in names if n]

        if not identifiers:
            raise ExtractionFailed(IDENTIFIER_MISSING_MESSAGE)

        if self._strict:
            if len(set(identifiers)) > 1:
                raise ExtractionFailed(
                    f"Document carries conflicting identifiers: {', '.join(dict.fromkeys(identifiers))}"
                )
            if len({n.lower() for n in names}) > 1:
                raise ExtractionFailed(
                    f"Document carries conflicting names: {', '.join(dict.fromkeys(names))}"
                )

        return ExtractedDetails(
            identifier=identifiers[0],
            name=names[0] if names else None,
            raw_text=text,
        )

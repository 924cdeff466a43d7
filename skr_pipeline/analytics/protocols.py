from __future__ import annotations

import re
from typing import Iterable

from skr_pipeline.api.types import EnhancedTransaction
from skr_pipeline.config import ProgramInfo


def normalize_label(text: str) -> str:
    return re.sub(r"[^A-Z0-9]", "", text.upper())


class ProgramMatcher:
    """Attribute a decoded transaction to the tracked protocols it touched.

    A protocol matches when its program id appears among the transaction's
    accounts or instructions, or when the decoder's ``source`` label contains
    one of its labels (longest label wins, so ``RAYDIUM_CLMM`` beats
    ``RAYDIUM``).
    """

    def __init__(self, programs: Iterable[ProgramInfo]) -> None:
        self.programs = {program.program_id: program for program in programs}
        labels = []
        for program in self.programs.values():
            for label in program.source_labels:
                labels.append((normalize_label(label), program.program_id))
        self._labels = sorted(labels, key=lambda item: len(item[0]), reverse=True)

    def match(self, tx: EnhancedTransaction) -> set[str]:
        matched = {account for account in tx.referenced_accounts() if account in self.programs}
        by_source = self.match_source(tx.source)
        if by_source:
            matched.add(by_source)
        return matched

    def match_source(self, source: str | None) -> str | None:
        normalized = normalize_label(source or "")
        if not normalized or normalized == "UNKNOWN":
            return None
        for label, program_id in self._labels:
            if label and label in normalized:
                return program_id
        return None

    def describe(self, program_id: str) -> tuple[str, str]:
        program = self.programs.get(program_id)
        if program is None:
            return program_id[:8], "Other"
        return program.name, program.category

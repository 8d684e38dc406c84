"""Fold progressive recognition updates into one running transcript."""

from __future__ import annotations

from typing import Optional

from models import CorrectionPolicy, Transcript

_TAGS = {
    "apd": CorrectionPolicy.REPLACE_LAST,
    "rpl": CorrectionPolicy.REVISE,
}


def policy_for_tag(pgs: Optional[str]) -> CorrectionPolicy:
    """Map the backend's ``pgs`` marker to a correction policy."""
    if not pgs:
        return CorrectionPolicy.APPEND
    return _TAGS.get(str(pgs).lower(), CorrectionPolicy.APPEND)


class TranscriptReconciler:
    """Running transcript built from tagged segments.

    ``committed_text`` is the stable prefix, ``pending_text`` the latest
    guess that a later segment may still replace.  What the user sees is
    their concatenation.
    """

    def __init__(self) -> None:
        self.committed_text = ""
        self.pending_text = ""

    @property
    def displayed_text(self) -> str:
        return self.committed_text + self.pending_text

    def update(self, segment: str, policy: CorrectionPolicy = CorrectionPolicy.APPEND) -> Transcript:
        if policy == CorrectionPolicy.REPLACE_LAST:
            # the last rendered value becomes the new baseline
            self.committed_text = self.displayed_text
            self.pending_text = segment
        elif policy == CorrectionPolicy.REVISE:
            self.pending_text = segment
        else:
            self.committed_text = self.displayed_text + segment
            self.pending_text = ""
        return Transcript(text=self.displayed_text, is_final=False, correction_policy=policy)

    def finalize(self) -> Transcript:
        text = self.displayed_text
        self.reset()
        return Transcript(text=text, is_final=True)

    def reset(self) -> None:
        self.committed_text = ""
        self.pending_text = ""

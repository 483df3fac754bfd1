from __future__ import annotations

from typing import Any


class AnalysisError(Exception):
    """Transcript analysis could not produce assignments."""


class AnalysisParseError(AnalysisError):
    def __init__(self, transcript: str, raw_response: str | None = None) -> None:
        super().__init__("Failed to parse AI response")
        self.transcript = transcript
        self.raw_response = raw_response


class AnalysisProviderError(AnalysisError):
    def __init__(self, detail: str) -> None:
        super().__init__(f"Failed to analyze transcript: {detail}")
        self.detail = detail


class AnalysisNotConfiguredError(AnalysisError):
    pass


class AnalysisValidationWarning(UserWarning):
    """One model-produced entry was dropped."""

    def __init__(self, index: int, entry: Any, reason: str) -> None:
        super().__init__(f"assignment {index} dropped: {reason}")
        self.index = index
        self.entry = entry
        self.reason = reason


class ApplierError(Exception):
    def __init__(self, index: int, action: str, reason: str, lead_id: str | None = None) -> None:
        super().__init__(f"assignment {index} ({action}) failed: {reason}")
        self.index = index
        self.action = action
        self.reason = reason
        self.lead_id = lead_id

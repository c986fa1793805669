from __future__ import annotations

from typing import Dict, Optional

from pydantic import BaseModel, Field


DEFAULT_CREDIT_RATIOS: Dict[str, int] = {
    "writing": 3,
    "research": 5,
    "detector": 10,
    "detector_generation": 5,
    "prompt_input": 10,
    "prompt_output": 5,
}

DETECTION_TOOL_TYPES = ("detector_detection", "detector-detection")


class CreditRatioTable(BaseModel):
    """
    Words-per-credit divisors by tool type.

    Detection is priced per thousand words instead of by divisor; it applies
    to the `detector` tool with the `detection` operation and to the
    `detector_detection` tool type.
    """

    ratios: Dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_CREDIT_RATIOS))
    default_tool_type: str = "writing"
    detection_credits_per_1000_words: int = 50

    def ratio_for(self, tool_type: str, operation: Optional[str] = None) -> int:
        if tool_type == "detector" and operation == "generation":
            return self.ratios["detector_generation"]
        return self.ratios.get(tool_type, self.ratios[self.default_tool_type])

    def is_detection(self, tool_type: str, operation: Optional[str] = None) -> bool:
        return tool_type in DETECTION_TOOL_TYPES or (
            tool_type == "detector" and operation == "detection"
        )

    def required_credits(
        self, amount: int, tool_type: str = "writing", operation: Optional[str] = None
    ) -> int:
        if amount is None or amount <= 0:
            raise ValueError("amount must be positive")

        if self.is_detection(tool_type, operation):
            # ceil(amount / 1000 * rate) in integer arithmetic
            return -(-amount * self.detection_credits_per_1000_words // 1000)
        return -(-amount // self.ratio_for(tool_type, operation))

"""
Feedback extractor.

Splits a raw model reply into the prose shown to the learner and the
embedded feedback block. Best-effort pattern matching over semi-structured
text: anything unexpected degrades to "no feedback", never to a dropped or
mangled message.
"""

import json
import logging
import re
from typing import NamedTuple, Optional

from pydantic import ValidationError

from convo_coach.models import Feedback

logger = logging.getLogger(__name__)

# First brace-delimited region (no nested braces) carrying a "grammarFix" key,
# optionally wrapped in a markdown code fence.
FEEDBACK_BLOCK_PATTERN = re.compile(
    r'(?:```(?:json|JSON)?\s*)?(?P<block>\{[^{}]*"grammarFix"[^{}]*\})(?:\s*```)?',
)


class ExtractionResult(NamedTuple):
    """Display text plus feedback (None when absent or unparseable)."""
    display_text: str
    feedback: Optional[Feedback]


def extract_feedback(raw: str) -> ExtractionResult:
    """
    Separate prose from the structured feedback block.

    Args:
        raw: Assistant reply as returned by the completion client

    Returns:
        ExtractionResult. When a block is found and parses, display_text is
        the reply with exactly that region removed and trimmed. Otherwise the
        reply is returned verbatim with feedback None.
    """
    if not raw:
        return ExtractionResult(raw or "", None)

    match = FEEDBACK_BLOCK_PATTERN.search(raw)
    if not match:
        logger.debug("No feedback block in reply")
        return ExtractionResult(raw, None)

    try:
        payload = json.loads(match.group("block"))
        if not isinstance(payload, dict):
            raise ValueError("feedback block is not an object")
        feedback = Feedback.model_validate(payload)
    except (json.JSONDecodeError, ValidationError, ValueError, TypeError) as e:
        logger.debug(f"Feedback block did not parse, keeping reply verbatim: {e}")
        return ExtractionResult(raw, None)

    display_text = (raw[:match.start()] + raw[match.end():]).strip()
    return ExtractionResult(display_text, feedback)

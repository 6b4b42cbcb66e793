"""Promise protocol: how an agent reports the outcome of an attempt.

The agent embeds one of two tokens in its free-form output:

    <promise>COMPLETE</promise>
    <promise>FAILED: {reason}</promise>

Rules when the output is ambiguous:
    - COMPLETE anywhere in the output wins over any FAILED token.
    - With several FAILED tokens, the first one's reason is used.
    - A blank reason is reported as no reason.
"""

import re
from dataclasses import dataclass
from enum import Enum

COMPLETE_TOKEN = "<promise>COMPLETE</promise>"
FAILED_PATTERN = re.compile(r"<promise>FAILED:(.*?)</promise>", re.DOTALL)


class SignalKind(str, Enum):
    COMPLETE = "complete"
    FAILED = "failed"
    NONE = "none"


@dataclass(frozen=True)
class Signal:
    """Outcome detected in an attempt's accumulated output."""

    kind: SignalKind
    reason: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.kind is SignalKind.COMPLETE


def detect_signal(output: str) -> Signal:
    """Scan agent output for the promise protocol.

    Returns:
        Signal with kind COMPLETE, FAILED (with the reason, if any), or NONE
        when the agent ended without reporting.
    """
    if COMPLETE_TOKEN in output:
        return Signal(SignalKind.COMPLETE)

    match = FAILED_PATTERN.search(output)
    if match:
        reason = match.group(1).strip()
        return Signal(SignalKind.FAILED, reason or None)

    return Signal(SignalKind.NONE)

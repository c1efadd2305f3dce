"""
Human-in-the-loop protocol.

APPROVAL and HANDOFF nodes suspend the run by returning an HITLRequest.
The request is recorded on the Run and broadcast as ``step:suspend``; the
run stays SUSPENDED until ``GraphExecutor.resume(run_id, decision)`` is
called with the reviewer's (or operator's) decision payload.
"""

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

_APPROVE_WORDS = {"approve", "approved", "yes", "y", "ok", "accept", "true"}
_REJECT_WORDS = {"reject", "rejected", "no", "n", "deny", "denied", "false"}


class HITLKind(StrEnum):
    """Why a run is waiting on a human."""

    APPROVAL = "approval"  # Reviewer approves or rejects
    HANDOFF = "handoff"  # Operator takes over and hands control back


@dataclass
class HITLRequest:
    """What a suspending node asks of the human."""

    prompt: str
    kind: HITLKind = HITLKind.APPROVAL
    assign_to: str | None = None
    options: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "prompt": self.prompt,
            "kind": self.kind.value,
            "assign_to": self.assign_to,
            "options": self.options,
            "data": self.data,
        }


@dataclass
class HITLDecision:
    """
    A reviewer's decision, normalised from whatever payload the caller sent.

    Accepted shapes:
        {"approved": true, "comment": "looks good"}
        {"action": "reject", "comment": "wrong customer"}
        "approve" / "no"
    """

    approved: bool | None
    comment: str = ""
    reviewer: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, decision: Any) -> "HITLDecision":
        if isinstance(decision, bool):
            return cls(approved=decision, payload={"approved": decision})

        if isinstance(decision, str):
            word = decision.strip().lower()
            approved = True if word in _APPROVE_WORDS else False if word in _REJECT_WORDS else None
            return cls(approved=approved, comment=decision, payload={"response": decision})

        if isinstance(decision, dict):
            approved = decision.get("approved")
            if approved is None:
                action = str(decision.get("action") or decision.get("decision") or "").lower()
                if action in _APPROVE_WORDS:
                    approved = True
                elif action in _REJECT_WORDS:
                    approved = False
            return cls(
                approved=bool(approved) if approved is not None else None,
                comment=str(decision.get("comment") or ""),
                reviewer=decision.get("reviewer"),
                payload=dict(decision),
            )

        return cls(approved=None, payload={"response": decision})

    @property
    def rejected(self) -> bool:
        return self.approved is False

    def to_output(self) -> dict[str, Any]:
        """The decision as the suspended node's output."""
        output = dict(self.payload)
        if self.approved is not None:
            output["approved"] = self.approved
        return output

# /leadflow/flows/results.py

"""
Step outcomes returned by the node interpreter.

A step is one node's side effect plus the decision of where to go next; the
engine turns the outcome into a persisted execution state.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union


@dataclass(frozen=True)
class Advance:
    next_node_id: str
    handle: Optional[str] = None


@dataclass(frozen=True)
class Suspend:
    # None means "until the contact replies"
    resume_at: Optional[datetime] = None

    @property
    def awaiting_reply(self) -> bool:
        return self.resume_at is None


@dataclass(frozen=True)
class Complete:
    reason: str = "end"
    human_takeover: bool = False


@dataclass(frozen=True)
class Fail:
    reason: str


StepResult = Union[Advance, Suspend, Complete, Fail]


@dataclass(frozen=True)
class Reply:
    """What the contact sent back to a waiting execution."""
    text: Optional[str] = None
    button_index: Optional[int] = None
    # Channel message id when the reply came from WhatsApp
    message_id: Optional[str] = None

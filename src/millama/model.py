"""Millama domain model types (tracked users, messages, drafts, failures, sessions)."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Literal, TypeAlias

Direction: TypeAlias = Literal["incoming", "outgoing"]

FailureKind: TypeAlias = Literal[
    "transport",
    "auth",
    "rate_limited",
    "malformed_response",
    "empty_completion",
]


@dataclass(frozen=True, slots=True)
class TrackedUser:
    id: int
    name: str
    system_prompt: str


@dataclass(frozen=True, slots=True)
class Message:
    sender_id: int
    text: str
    timestamp: float
    direction: Direction = "incoming"

    @property
    def is_incoming(self) -> bool:
        return self.direction == "incoming"


@dataclass(frozen=True, slots=True)
class ModelParams:
    model: str
    temperature: float


@dataclass(frozen=True, slots=True)
class Draft:
    text: str
    model: str


@dataclass(frozen=True, slots=True)
class DraftFailure:
    """Base for the typed failures returned by the draft client."""

    message: str
    kind: FailureKind = field(default="transport", init=False)

    def describe(self) -> str:
        return f"{self.kind}: {self.message}"


@dataclass(frozen=True, slots=True)
class TransportFailure(DraftFailure):
    status: int | None = None
    kind: FailureKind = field(default="transport", init=False)


@dataclass(frozen=True, slots=True)
class AuthFailure(DraftFailure):
    status: int | None = None
    kind: FailureKind = field(default="auth", init=False)


@dataclass(frozen=True, slots=True)
class RateLimited(DraftFailure):
    retry_after: float | None = None
    kind: FailureKind = field(default="rate_limited", init=False)


@dataclass(frozen=True, slots=True)
class MalformedResponse(DraftFailure):
    kind: FailureKind = field(default="malformed_response", init=False)


@dataclass(frozen=True, slots=True)
class EmptyCompletion(DraftFailure):
    kind: FailureKind = field(default="empty_completion", init=False)


DraftResult: TypeAlias = Draft | DraftFailure


class SendFailure(Exception):
    """Raised by the send capability when the outbound message was not delivered."""


class SessionState(enum.StrEnum):
    IDLE = "idle"
    DRAFTING = "drafting"
    AWAITING_APPROVAL = "awaiting_approval"
    SENT = "sent"
    REJECTED = "rejected"
    SUPERSEDED = "superseded"


DecisionKind: TypeAlias = Literal["approve", "reject", "rephrase"]


@dataclass(frozen=True, slots=True)
class Decision:
    session_token: str
    kind: DecisionKind
    guidance: str | None = None


class DecisionOutcome(enum.StrEnum):
    APPLIED = "applied"
    STALE = "stale"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class DebounceTrigger:
    user_id: int
    arm_generation: int
    fired_at: float


def make_session_token(user_id: int, generation_id: int) -> str:
    return f"{user_id}:{generation_id}"


def parse_session_token(token: str) -> tuple[int, int] | None:
    user_part, sep, generation_part = token.partition(":")
    if not sep:
        return None
    try:
        return int(user_part), int(generation_part)
    except ValueError:
        return None

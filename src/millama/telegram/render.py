from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal, TypeAlias

from ..model import DraftFailure, TrackedUser

CallbackAction: TypeAlias = Literal["approve", "rephrase", "reject", "retry"]

_ACTIONS: frozenset[str] = frozenset({"approve", "rephrase", "reject", "retry"})

APPROVE_LABEL = "\N{WHITE HEAVY CHECK MARK} Approve"
REPHRASE_LABEL = "\N{ANTICLOCKWISE DOWNWARDS AND UPWARDS OPEN CIRCLE ARROWS} Rephrase"
REJECT_LABEL = "\N{CROSS MARK} Reject"
RETRY_LABEL = "\N{CLOCKWISE RIGHTWARDS AND LEFTWARDS OPEN CIRCLE ARROWS} Retry"


@dataclass(frozen=True, slots=True)
class CallbackData:
    action: CallbackAction
    value: str


def make_callback_data(action: CallbackAction, value: str | int) -> str:
    return f"{action}:{value}"


def parse_callback_data(data: str | None) -> CallbackData | None:
    if not data:
        return None
    action, sep, value = data.partition(":")
    if not sep or action not in _ACTIONS or not value:
        return None
    return CallbackData(action=action, value=value)  # type: ignore[arg-type]


def _button(text: str, action: CallbackAction, value: str | int) -> dict[str, str]:
    return {"text": text, "callback_data": make_callback_data(action, value)}


def draft_keyboard(session_token: str) -> dict[str, Any]:
    return {
        "inline_keyboard": [
            [
                _button(APPROVE_LABEL, "approve", session_token),
                _button(REPHRASE_LABEL, "rephrase", session_token),
                _button(REJECT_LABEL, "reject", session_token),
            ]
        ]
    }


def resend_keyboard(session_token: str) -> dict[str, Any]:
    return {
        "inline_keyboard": [
            [
                _button(APPROVE_LABEL, "approve", session_token),
                _button(REJECT_LABEL, "reject", session_token),
            ]
        ]
    }


def retry_keyboard(user_id: int) -> dict[str, Any]:
    return {"inline_keyboard": [[_button(RETRY_LABEL, "retry", user_id)]]}


def render_draft(user: TrackedUser, text: str, *, rephrased: bool = False) -> str:
    header = f"AI draft for {user.name}"
    if rephrased:
        header = f"{header} (rephrased)"
    return f"{header}\n\n{text}"


def render_sent(user: TrackedUser, text: str) -> str:
    return f"\N{WHITE HEAVY CHECK MARK} Sent to {user.name}\n\n{text}"


def render_rejected(user: TrackedUser) -> str:
    return f"\N{CROSS MARK} Rejected draft for {user.name}"


def render_withdrawn(user: TrackedUser) -> str:
    return f"Withdrawn: {user.name} sent new messages, drafting again."


def render_rephrasing(user: TrackedUser) -> str:
    return f"Rephrasing draft for {user.name}..."


def render_rephrase_prompt(user: TrackedUser) -> str:
    return (
        f"Rephrase mode for {user.name}\n\n"
        "Send me the guidance for rephrasing "
        '(e.g. "the name of the user is John").'
    )


def render_failure(user: TrackedUser, failure: DraftFailure) -> str:
    return f"No draft for {user.name}: {failure.describe()}"


def render_send_failed(
    user: TrackedUser,
    text: str,
    error: str,
    *,
    can_retry: bool,
    superseded: bool = False,
) -> str:
    if superseded:
        return (
            f"Sending to {user.name} failed: {error}\n"
            f"{user.name} sent new messages, drafting again."
        )
    if can_retry:
        return (
            f"Sending to {user.name} failed: {error}\n"
            "Tap Approve to try once more.\n\n"
            f"{text}"
        )
    return f"Sending to {user.name} failed again: {error}\nDraft discarded."

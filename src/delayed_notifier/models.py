# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Pydantic models for notification payloads and queue entries.

A notification is a tagged union discriminated by ``kind``:

    - InstantNotification: delivered as soon as it is submitted
    - DelayedNotification: held in the delayed queue until ``due_time``

Delayed notifications are stored in the queue as JSON entries whose ``time``
field is the due-time in integer Unix seconds, written as a decimal string
equal to the sorted-set score of the entry.
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from datetime import datetime, timezone
from email.errors import HeaderParseError
from email.headerregistry import Address
from email.utils import parseaddr
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator
from pydantic_core import PydanticCustomError

from .errors import InvalidTimeFormatError, PayloadValidationError, TimeNotInFutureError

_INTEGER_RE = re.compile(r"-?[0-9]+")

# Layout accepted by the HTTP API for due-times, always interpreted as UTC.
TIME_LAYOUT = "%Y-%m-%d %H:%M:%S"


class NotificationKind(str, Enum):
    """Delivery mode of a notification."""

    INSTANT = "instant"
    DELAYED = "delayed"


def validate_address(value: str) -> str:
    """Check that ``value`` holds exactly one syntactically valid mail address.

    Display names are accepted (``"Ann <ann@example.com>"``). The original
    string is returned stripped.

    Raises:
        ValueError: If no address with both a local part and a domain is found.
    """
    if not isinstance(value, str) or not value.strip():
        raise ValueError("address must be a non-empty string")
    if "\r" in value or "\n" in value:
        raise ValueError("address must not contain line breaks")
    _name, addr = parseaddr(value.strip())
    if not addr or "@" not in addr:
        raise ValueError(f"no valid mail address found in {value!r}")
    try:
        parsed = Address(addr_spec=addr)
    except (ValueError, IndexError, HeaderParseError) as exc:
        raise ValueError(f"no valid mail address found in {value!r}") from exc
    if not parsed.username or not parsed.domain:
        raise ValueError(f"no valid mail address found in {value!r}")
    return value.strip()


def normalise_due_time(value: Any) -> datetime:
    """Convert a user supplied due-time into an aware UTC datetime.

    Accepted forms: ``datetime`` (naive values are UTC), Unix seconds as
    int/float or decimal string, ``"YYYY-MM-DD HH:MM:SS"`` (UTC) and ISO-8601.

    Raises:
        InvalidTimeFormatError: If the value matches none of the forms.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, bool):
        raise InvalidTimeFormatError(f"cannot parse due time {value!r}")
    elif isinstance(value, (int, float)):
        try:
            parsed = datetime.fromtimestamp(value, timezone.utc)
        except (OverflowError, OSError, ValueError) as exc:
            raise InvalidTimeFormatError(f"cannot parse due time {value!r}") from exc
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if _INTEGER_RE.fullmatch(text):
            return normalise_due_time(int(text))
        try:
            parsed = datetime.strptime(text, TIME_LAYOUT)
        except ValueError:
            try:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError as exc:
                raise InvalidTimeFormatError(f"cannot parse due time {value!r}") from exc
    else:
        raise InvalidTimeFormatError(f"cannot parse due time {value!r}")

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class _NotificationBase(BaseModel):
    """Fields shared by every notification kind."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    to: Annotated[str, Field(description="Recipient mail address")]
    subject: Annotated[str, Field(description="Message subject")]
    body: Annotated[str, Field(description="Plain-text message body")]

    @field_validator("to")
    @classmethod
    def recipient_must_be_address(cls, v: str) -> str:
        return validate_address(v)

    @field_validator("subject", "body")
    @classmethod
    def must_not_be_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be empty")
        return v

    @field_validator("subject")
    @classmethod
    def subject_must_be_single_line(cls, v: str) -> str:
        # Header values cannot carry line breaks.
        if "\r" in v or "\n" in v:
            raise ValueError("must not contain line breaks")
        return v


class InstantNotification(_NotificationBase):
    """Notification delivered as soon as it is submitted."""

    kind: Literal["instant"] = "instant"


class DelayedNotification(_NotificationBase):
    """Notification held in the delayed queue until ``due_time``."""

    kind: Literal["delayed"] = "delayed"
    due_time: Annotated[datetime, Field(description="UTC instant the notification becomes due")]

    @field_validator("due_time", mode="before")
    @classmethod
    def parse_due_time(cls, v: Any) -> datetime:
        try:
            return normalise_due_time(v)
        except InvalidTimeFormatError as exc:
            raise PydanticCustomError("invalid_time_format", "{reason}", {"reason": str(exc)}) from exc

    @property
    def score(self) -> int:
        """Sorted-set score: the due-time in integer Unix seconds."""
        return int(self.due_time.timestamp())

    def is_due(self, now: datetime | None = None) -> bool:
        """Return True when the due-time is not after ``now``."""
        now = now or datetime.now(timezone.utc)
        return self.due_time <= now


Notification = Annotated[Union[InstantNotification, DelayedNotification], Field(discriminator="kind")]

_notification_adapter: TypeAdapter[Notification] = TypeAdapter(Notification)


def _convert_validation_error(exc: ValidationError) -> PayloadValidationError:
    errors = exc.errors()
    for err in errors:
        if err.get("type") == "invalid_time_format":
            return InvalidTimeFormatError(err.get("msg"))
    details = "; ".join(
        f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg')}" for err in errors
    )
    return PayloadValidationError(details or str(exc))


def ensure_future(notification: DelayedNotification, now: datetime | None = None) -> None:
    """Raise :class:`TimeNotInFutureError` unless the due-time is after ``now``."""
    now = now or datetime.now(timezone.utc)
    if notification.due_time <= now:
        raise TimeNotInFutureError(
            f"due time {notification.due_time.isoformat()} is not after {now.isoformat()}"
        )


def build_notification(data: Mapping[str, Any], *, now: datetime | None = None) -> InstantNotification | DelayedNotification:
    """Validate raw data into a notification.

    ``kind`` defaults to ``delayed`` when a ``due_time`` is present and to
    ``instant`` otherwise. Delayed notifications must be due strictly after
    ``now``.

    Raises:
        PayloadValidationError: On any invalid field (``InvalidTimeFormatError``
            and ``TimeNotInFutureError`` for due-time problems).
    """
    payload = dict(data)
    if "kind" not in payload:
        payload["kind"] = NotificationKind.DELAYED.value if payload.get("due_time") is not None else NotificationKind.INSTANT.value
    try:
        notification = _notification_adapter.validate_python(payload)
    except ValidationError as exc:
        raise _convert_validation_error(exc) from exc
    if isinstance(notification, DelayedNotification):
        ensure_future(notification, now)
    return notification


def encode_entry(notification: DelayedNotification) -> tuple[str, int]:
    """Serialise a delayed notification into its queue member and score.

    The ``time`` field holds the score as a decimal integer string so that the
    stored payload and its sorted-set score always agree.
    """
    score = notification.score
    member = json.dumps(
        {
            "kind": notification.kind,
            "time": str(score),
            "to": notification.to,
            "subject": notification.subject,
            "body": notification.body,
        }
    )
    return member, score


def decode_entry(raw: str | bytes) -> DelayedNotification:
    """Parse a queue member back into a :class:`DelayedNotification`.

    The due-time is not required to be in the future: popped entries are due
    by definition.

    Raises:
        PayloadValidationError: If the entry is not valid JSON or misses fields.
    """
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise PayloadValidationError(f"queue entry is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise PayloadValidationError("queue entry must be a JSON object")
    time_value = data.get("time")
    if not isinstance(time_value, str) or not _INTEGER_RE.fullmatch(time_value):
        raise InvalidTimeFormatError(f"queue entry time must be an integer string, got {time_value!r}")
    try:
        return DelayedNotification(
            to=data.get("to"),
            subject=data.get("subject"),
            body=data.get("body"),
            due_time=int(time_value),
        )
    except ValidationError as exc:
        raise _convert_validation_error(exc) from exc

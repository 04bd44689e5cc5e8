# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Error taxonomy for the notification service.

Every error raised by the delivery engine derives from :class:`NotifierError`
and carries a stable ``code`` usable in API responses and logs:

- ``PayloadValidationError``: bad address, empty field or bad time. Never retried.
- ``InvalidSenderAddressError``: the configured sender cannot be parsed.
- ``DeliveryCanceledError``: the stop signal fired. Not a delivery failure.
- ``QueueStoreError`` / ``QueueTimeoutError``: a Redis round-trip failed.
- ``DeliveryExhaustedError``: every SMTP attempt failed.
- ``FatalWorkerError``: an unclassified error escaped a worker batch.
"""

from __future__ import annotations


class NotifierError(RuntimeError):
    """Base class for all classified service errors."""

    code = "notifier_error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.__class__.__doc__ or self.code)


class PayloadValidationError(NotifierError):
    """Notification payload failed validation."""

    code = "invalid_payload"


class InvalidTimeFormatError(PayloadValidationError):
    """Due-time cannot be parsed or normalised."""

    code = "invalid_time_format"


class TimeNotInFutureError(PayloadValidationError):
    """Due-time is not in the future."""

    code = "time_not_in_future"


class InvalidSenderAddressError(NotifierError):
    """Configured sender address is not a valid mail address."""

    code = "invalid_sender_address"


class DeliveryCanceledError(NotifierError):
    """Delivery canceled before completion."""

    code = "canceled"


class QueueStoreError(NotifierError):
    """Queue store round-trip failed."""

    code = "store_error"


class QueueTimeoutError(QueueStoreError):
    """Queue store did not answer within the configured timeout."""

    code = "store_timeout"


class DeliveryExhaustedError(NotifierError):
    """Raised when every SMTP attempt for a message failed.

    Attributes:
        attempts: Number of attempts made (initial try plus retries).
        last_error: The transport error of the final attempt.
    """

    code = "delivery_exhausted"

    def __init__(self, attempts: int, last_error: BaseException | None):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"all {attempts} attempts to send message failed, last error: {last_error}")


class FatalWorkerError(NotifierError):
    """Unclassified error in a dispatch batch; the worker stopped."""

    code = "fatal_worker_error"

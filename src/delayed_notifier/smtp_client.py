# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SMTP transport client with exponential backoff and cancellation.

This module delivers one notification to one recipient. Each attempt opens
its own connection, authenticates when credentials are configured, sends a
plain-text message and quits. Failed attempts are retried with a doubling
pause:

    attempt 0: immediately
    attempt i: after ``basic_retry_pause * 2 ** (i - 1)`` seconds

The caller passes an ``asyncio.Event`` as stop signal. It is checked before
the first attempt and before every retry, and a retry pause ends as soon as
the event is set.

Example:
    Sending a notification::

        client = SMTPClient(
            SMTPConfig(sender_email="noreply@example.com", host="smtp.example.com", port=587,
                       sender_password="secret", use_tls=True),
            metrics=NotifierMetrics(),
        )
        await client.send(InstantNotification(to="ann@example.com", subject="Hi", body="Hello"))
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import parseaddr

import aiosmtplib

from .errors import (
    DeliveryCanceledError,
    DeliveryExhaustedError,
    InvalidSenderAddressError,
    PayloadValidationError,
)
from .logger import get_logger
from .models import DelayedNotification, InstantNotification, validate_address
from .prometheus import Metrics, NoopMetrics

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASIC_RETRY_PAUSE = 5.0
DEFAULT_ATTEMPT_TIMEOUT = 30.0

SEND_OPERATION = "SendEmail"

# Errors worth another attempt: network failures, timeouts and SMTP replies.
TRANSPORT_ERRORS = (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError)


@dataclass
class SMTPConfig:
    """Static configuration of the SMTP client.

    Attributes:
        sender_email: Address used in the From header and as login user.
        sender_password: Password for SMTP authentication, or None for no auth.
        host: SMTP server hostname or IP address.
        port: SMTP server port (typically 25, 465 or 587).
        use_tls: True for TLS (implicit on 465, STARTTLS elsewhere), False for
            plain SMTP, None to enable TLS only on port 465.
        skip_verify: Disable certificate validation.
        max_retries: Retries after the first failed attempt. None for the default.
        basic_retry_pause: Pause before the first retry, in seconds. None for the default.
        attempt_timeout: Upper bound in seconds for one connect-and-send attempt.
    """

    sender_email: str
    sender_password: str | None = None
    host: str = "localhost"
    port: int = 25
    use_tls: bool | None = None
    skip_verify: bool = False
    max_retries: int | None = None
    basic_retry_pause: float | None = None
    attempt_timeout: float = DEFAULT_ATTEMPT_TIMEOUT


def _is_set(stop_event: asyncio.Event | None) -> bool:
    return stop_event is not None and stop_event.is_set()


class SMTPClient:
    """Send single notifications over SMTP with bounded retries.

    The client keeps no state besides its configuration, so one instance is
    safe to share between concurrent dispatch batches.

    Attributes:
        config: The static SMTP configuration.
        max_retries: Effective number of retries after the first attempt.
        basic_retry_pause: Effective pause before the first retry, in seconds.
        metrics: Metrics sink receiving ``SendEmail`` outcomes.
    """

    def __init__(self, config: SMTPConfig, metrics: Metrics | None = None, logger=None):
        """Apply defaults for unset retry settings.

        Args:
            config: SMTP configuration.
            metrics: Metrics sink; a no-op sink is used when omitted.
            logger: Optional logger, mainly for tests.
        """
        self.config = config
        self.metrics = metrics or NoopMetrics()
        self.logger = logger or get_logger("SMTPClient")
        if config.max_retries is None or config.max_retries < 0:
            self.max_retries = DEFAULT_MAX_RETRIES
        else:
            self.max_retries = int(config.max_retries)
        if config.basic_retry_pause is None or config.basic_retry_pause < 0:
            self.basic_retry_pause = DEFAULT_BASIC_RETRY_PAUSE
        else:
            self.basic_retry_pause = float(config.basic_retry_pause)

    # ------------------------------------------------------------------ backoff
    def create_pause(self, attempt: int) -> float:
        """Return the pause in seconds before ``attempt``.

        Attempt 0 is the first try and has no pause; attempt ``i >= 1`` waits
        ``basic_retry_pause * 2 ** (i - 1)``.
        """
        if attempt <= 0:
            return 0.0
        return self.basic_retry_pause * 2 ** (attempt - 1)

    def total_retry_budget(self) -> float:
        """Worst-case duration of one :meth:`send` call, in seconds."""
        pauses = sum(self.create_pause(i) for i in range(1, self.max_retries + 1))
        return pauses + (self.max_retries + 1) * self.config.attempt_timeout

    # --------------------------------------------------------------------- send
    async def send(
        self,
        notification: InstantNotification | DelayedNotification,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        """Deliver ``notification`` to its recipient.

        Args:
            notification: The notification to deliver.
            stop_event: Optional stop signal; once set, no further attempt is made
                and a pending retry pause ends immediately.

        Raises:
            DeliveryCanceledError: The stop signal fired before success.
            InvalidSenderAddressError: The configured sender cannot be parsed.
            PayloadValidationError: The recipient cannot be parsed.
            DeliveryExhaustedError: Every attempt failed.
        """
        if _is_set(stop_event):
            self.metrics.inc_canceled(SEND_OPERATION)
            self.logger.warning("SendEmail: canceled before sending to=%s", notification.to)
            raise DeliveryCanceledError("SendEmail: canceled before sending")

        start = time.perf_counter()
        try:
            try:
                validate_address(self.config.sender_email)
            except ValueError as exc:
                self.metrics.inc_error(SEND_OPERATION)
                self.logger.error("SendEmail: no valid sender address sender=%r", self.config.sender_email)
                raise InvalidSenderAddressError(f"SendEmail: no valid sender address: {exc}") from exc
            try:
                validate_address(notification.to)
            except ValueError as exc:
                self.metrics.inc_error(SEND_OPERATION)
                self.logger.error("SendEmail: no valid recipient address to=%r", notification.to)
                raise PayloadValidationError(f"SendEmail: no valid recipient address: {exc}") from exc

            try:
                message = self.build_message(notification)
            except ValueError as exc:
                self.metrics.inc_error(SEND_OPERATION)
                self.logger.error("SendEmail: cannot build message to=%r error=%s", notification.to, exc)
                raise PayloadValidationError(f"SendEmail: cannot build message: {exc}") from exc
            self.logger.info("SendEmail: sending email to=%s", notification.to)
            try:
                attempts = await self._send_with_retry(message, stop_event)
            except DeliveryCanceledError:
                self.metrics.inc_canceled(SEND_OPERATION)
                raise
            except DeliveryExhaustedError as exc:
                self.metrics.inc_error(SEND_OPERATION)
                self.logger.error("SendEmail: cannot send message to=%s error=%s", notification.to, exc)
                raise
        finally:
            self.metrics.observe(SEND_OPERATION, start)

        self.metrics.inc_success(SEND_OPERATION)
        self.logger.info("SendEmail: successfully sent message to=%s attempts=%s", notification.to, attempts)

    def build_message(self, notification: InstantNotification | DelayedNotification) -> EmailMessage:
        """Build the plain-text message carrying From/To/Subject headers."""
        msg = EmailMessage()
        msg["From"] = self.config.sender_email
        msg["To"] = notification.to
        msg["Subject"] = notification.subject
        msg.set_content(notification.body, subtype="plain")
        return msg

    async def _send_with_retry(self, message: EmailMessage, stop_event: asyncio.Event | None) -> int:
        """Run the attempt loop and return the number of attempts used."""
        last_error: BaseException | None = None
        attempts = self.max_retries + 1
        for attempt in range(attempts):
            if _is_set(stop_event):
                self.logger.warning("sendWithRetry: canceled before attempt=%s", attempt)
                raise DeliveryCanceledError("sendWithRetry: canceled before sending")

            if attempt > 0:
                pause = self.create_pause(attempt)
                self.logger.info(
                    "sendWithRetry: retrying send message attempt=%s pause=%.2fs last_error=%s",
                    attempt,
                    pause,
                    last_error,
                )
                if await self._wait_pause(pause, stop_event):
                    self.logger.warning("sendWithRetry: canceled during pause attempt=%s", attempt)
                    raise DeliveryCanceledError("sendWithRetry: canceled during retry pause")

            try:
                await self._deliver(message)
            except TRANSPORT_ERRORS as exc:
                last_error = exc
                self.logger.warning("sendWithRetry: attempt=%s failed error=%r", attempt, exc)
                continue
            return attempt + 1

        self.logger.error("sendWithRetry: all attempts to send message failed, last_error=%r", last_error)
        raise DeliveryExhaustedError(attempts, last_error) from last_error

    async def _wait_pause(self, pause: float, stop_event: asyncio.Event | None) -> bool:
        """Sleep ``pause`` seconds; return True if the stop signal fired first."""
        if stop_event is None:
            await asyncio.sleep(pause)
            return False
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=pause)
        except asyncio.TimeoutError:
            return False
        return True

    # ---------------------------------------------------------- SMTP primitives
    def _resolve_use_tls(self) -> bool:
        if self.config.use_tls is None:
            return int(self.config.port) == 465
        return bool(self.config.use_tls)

    def _make_smtp(self) -> aiosmtplib.SMTP:
        """Create an unconnected SMTP client for one attempt.

        TLS behavior based on port and use_tls:
        - Port 465 with TLS: implicit TLS
        - Other ports with TLS: STARTTLS
        - No TLS: plain SMTP
        """
        host = self.config.host
        port = int(self.config.port)
        use_tls = self._resolve_use_tls()
        validate_certs = not self.config.skip_verify
        if use_tls and port == 465:
            return aiosmtplib.SMTP(
                hostname=host, port=port, use_tls=True, start_tls=False,
                validate_certs=validate_certs, timeout=self.config.attempt_timeout,
            )
        if use_tls:
            return aiosmtplib.SMTP(
                hostname=host, port=port, use_tls=False, start_tls=True,
                validate_certs=validate_certs, timeout=self.config.attempt_timeout,
            )
        return aiosmtplib.SMTP(
            hostname=host, port=port, use_tls=False, start_tls=False,
            validate_certs=validate_certs, timeout=self.config.attempt_timeout,
        )

    async def _deliver(self, message: EmailMessage) -> None:
        """Connect, authenticate, send and quit, bounded by ``attempt_timeout``."""
        smtp = self._make_smtp()

        async def _do_send():
            await smtp.connect()
            try:
                if self.config.sender_password:
                    await smtp.login(parseaddr(self.config.sender_email)[1], self.config.sender_password)
                await smtp.send_message(message)
            finally:
                try:
                    await smtp.quit()
                except TRANSPORT_ERRORS as exc:
                    self.logger.debug("sendWithRetry: quit failed error=%r", exc)

        await asyncio.wait_for(_do_send(), timeout=self.config.attempt_timeout)

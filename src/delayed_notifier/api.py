# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""FastAPI application factory and HTTP schemas for the notification service.

Endpoints:

- ``POST /send-notification``: deliver a notification immediately
- ``POST /send-notification-via-time``: schedule a notification for a due-time
- ``GET /list``: look up accepted notifications by id or recipient
- ``GET /health``: liveness probe, never authenticated
- ``GET /metrics``: Prometheus exposition

Every endpoint except ``/health`` requires the ``X-API-Token`` header when a
token is configured.

Example:
    Creating and running the API application::

        from delayed_notifier.api import create_app

        app = create_app(service, api_token="secret-token")
        uvicorn.run(app, host="0.0.0.0", port=8000)
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any, AsyncContextManager, cast

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from fastapi.security import APIKeyHeader
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from .errors import (
    DeliveryCanceledError,
    DeliveryExhaustedError,
    NotifierError,
    PayloadValidationError,
    QueueStoreError,
    QueueTimeoutError,
)
from .logger import get_logger
from .models import DelayedNotification, InstantNotification, build_notification

logger = get_logger("API")

API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)


class NotificationPayload(BaseModel):
    """Body of ``POST /send-notification``.

    The message text is accepted as ``body`` or ``message``.
    """

    model_config = ConfigDict(populate_by_name=True)

    to: str
    subject: str
    body: str = Field(validation_alias=AliasChoices("body", "message"))


class TimedNotificationPayload(NotificationPayload):
    """Body of ``POST /send-notification-via-time``."""

    time: str | int = Field(description='Due time, "YYYY-MM-DD HH:MM:SS" (UTC), ISO-8601 or Unix seconds')


class AcceptedResponse(BaseModel):
    message: str
    id: int


class NotificationRecord(BaseModel):
    """Audit record as returned by ``GET /list``."""

    id: int
    kind: str
    due_ts: int | None = None
    to: str
    subject: str
    body: str
    created_at: str | None = None


class NotificationListResponse(BaseModel):
    notifications: list[NotificationRecord]


def _status_for(exc: NotifierError) -> int:
    """Map a service error onto an HTTP status code."""
    if isinstance(exc, PayloadValidationError):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, QueueTimeoutError):
        return status.HTTP_504_GATEWAY_TIMEOUT
    if isinstance(exc, (QueueStoreError, DeliveryExhaustedError)):
        return status.HTTP_502_BAD_GATEWAY
    if isinstance(exc, DeliveryCanceledError):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def create_app(
    svc: Any,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None,
    health_check: Callable[[], bool] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        A :class:`delayed_notifier.service.NotificationService` (or any object
        with the same coroutine methods and a ``metrics`` attribute).
    api_token:
        Optional secret used to protect every endpoint but ``/health``.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.
    health_check:
        Optional callable returning False when a background component has
        stopped; ``/health`` then answers ``503``.

    Returns
    -------
    FastAPI
        A configured application ready to be served by Uvicorn.
    """
    api = FastAPI(title="Delayed Notifier", lifespan=lifespan)
    api.state.api_token = api_token
    api.state.service = svc

    async def require_token(request: Request, token: str | None = Depends(api_key_scheme)) -> None:
        """Reject the request with ``401`` when a token is configured and does not match."""
        expected = getattr(request.app.state, "api_token", None)
        if expected is None:
            return
        if not token or token != expected:
            raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")

    auth_dependency = Depends(require_token)

    @api.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Report malformed bodies as ``400`` like every other payload error."""
        logger.error("Validation error on %s %s: %s", request.method, request.url.path, exc.errors())
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": jsonable_errors(exc.errors())},
        )

    @api.exception_handler(NotifierError)
    async def notifier_exception_handler(request: Request, exc: NotifierError):
        code = _status_for(exc)
        if code >= 500:
            logger.error("%s %s failed: %r", request.method, request.url.path, exc)
        else:
            logger.warning("%s %s rejected: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=code, content={"detail": str(exc), "error": exc.code})

    @api.get("/health")
    async def health():
        """Health check endpoint for container monitoring (no authentication required)."""
        if health_check is not None and not health_check():
            return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"status": "unavailable"})
        return {"status": "ok"}

    @api.post("/send-notification", response_model=AcceptedResponse, dependencies=[auth_dependency])
    async def send_notification(payload: NotificationPayload):
        """Deliver a notification now, retrying within the SMTP client's budget."""
        notification = cast(InstantNotification, build_notification({"kind": "instant", **payload.model_dump()}))
        budget = svc.sender.total_retry_budget()
        try:
            notification_id = await asyncio.wait_for(svc.send_now(notification), timeout=budget)
        except asyncio.TimeoutError:
            logger.error("send-notification: no delivery within %ss to=%s", budget, notification.to)
            raise HTTPException(status.HTTP_504_GATEWAY_TIMEOUT, "Delivery did not complete in time")
        return AcceptedResponse(message="Notification sent", id=notification_id)

    @api.post("/send-notification-via-time", response_model=AcceptedResponse, dependencies=[auth_dependency])
    async def send_notification_via_time(payload: TimedNotificationPayload):
        """Schedule a notification for delivery at its due time."""
        data = payload.model_dump()
        data["due_time"] = data.pop("time")
        notification = cast(DelayedNotification, build_notification({"kind": "delayed", **data}))
        notification_id = await svc.schedule(notification)
        return AcceptedResponse(message="Notification scheduled", id=notification_id)

    @api.get("/list", response_model=NotificationListResponse, dependencies=[auth_dependency])
    async def list_notifications(
        id: int | None = Query(default=None, description="Audit id"),
        to: str | None = Query(default=None, description="Recipient address"),
    ):
        """Return accepted notifications, filtered by id or recipient."""
        if id is not None:
            record = await svc.get(id)
            if record is None:
                raise HTTPException(status.HTTP_404_NOT_FOUND, f"Notification {id} not found")
            return NotificationListResponse(notifications=[NotificationRecord(**record)])
        records = await svc.list_notifications(to)
        return NotificationListResponse(notifications=[NotificationRecord(**r) for r in records])

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics collected by the service."""
        return Response(content=svc.metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    return api


def jsonable_errors(errors: Any) -> list[dict[str, Any]]:
    """Keep only the JSON-safe parts of pydantic error entries."""
    return [
        {"loc": list(err.get("loc", ())), "msg": str(err.get("msg")), "type": err.get("type")}
        for err in errors
    ]

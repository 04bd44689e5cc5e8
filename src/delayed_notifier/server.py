# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""ASGI application entry point for uvicorn.

This module wires the components together from :func:`load_settings` and
exposes a factory for uvicorn.

Usage:
    uvicorn delayed_notifier.server:build_app --factory --host 0.0.0.0 --port 8000

Environment variables:
    DN_CONFIG: Path to the INI configuration file (default: config.ini)
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from fastapi import FastAPI

from .api import create_app
from .config import Settings, load_settings
from .delayed_queue import DelayedQueue
from .errors import FatalWorkerError, QueueStoreError
from .logger import configure_logging, get_logger
from .persistence import AuditStore
from .prometheus import NotifierMetrics
from .service import NotificationService
from .smtp_client import SMTPClient
from .worker import DispatchWorker

logger = get_logger("Server")


@dataclass
class Components:
    """Every long-lived object of one process, sharing one metrics registry."""

    metrics: NotifierMetrics
    sender: SMTPClient
    queue: DelayedQueue
    audit: AuditStore
    worker: DispatchWorker
    service: NotificationService


def build_components(settings: Settings) -> Components:
    """Instantiate the SMTP client, queue, audit store, worker and service."""
    metrics = NotifierMetrics()
    sender = SMTPClient(settings.smtp, metrics=metrics)
    queue = DelayedQueue.from_url(
        settings.redis.url,
        key=settings.redis.key,
        timeout=settings.redis.timeout,
        shutdown_timeout=settings.redis.shutdown_timeout,
        metrics=metrics,
    )
    audit = AuditStore(settings.db_path)
    worker = DispatchWorker(queue, sender, tick_interval=settings.tick_interval, metrics=metrics)
    service = NotificationService(sender, queue, audit, metrics=metrics)
    return Components(metrics, sender, queue, audit, worker, service)


async def shutdown(components: Components) -> None:
    """Drain the worker, then close the queue.

    Errors are logged, not raised, so that both steps always run.
    """
    try:
        await components.worker.stop()
    except FatalWorkerError as exc:
        logger.error("Server: worker had stopped on a fatal error=%r", exc.__cause__ or exc)
    try:
        await components.queue.close()
    except QueueStoreError as exc:
        logger.error("Server: cannot close queue error=%s", exc)


def build_app(settings: Settings | None = None) -> FastAPI:
    """Build the FastAPI application with a worker bound to its lifespan."""
    settings = settings or load_settings()
    configure_logging(settings.log_level)
    components = build_components(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler - starts and stops the dispatch worker."""
        await components.audit.init_db()
        await components.worker.start()
        logger.info("Server: started")
        yield
        await shutdown(components)
        logger.info("Server: stopped")

    return create_app(
        components.service,
        api_token=settings.server.api_token,
        lifespan=lifespan,
        health_check=lambda: not components.worker.failed,
    )

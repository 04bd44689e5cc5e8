"""Email notification service with delayed delivery.

This package delivers email notifications either immediately or at a
caller-specified time. Its core is the delayed-delivery engine:

- A Redis sorted set holding pending notifications keyed by due-time
- A dispatch worker polling the set and fanning due batches out
- An SMTP client delivering one message with exponential backoff

Around the engine it ships a FastAPI REST API, an SQLite audit store,
Prometheus metrics and a command-line interface.

Example:
    Running the worker against a local Redis and SMTP relay::

        from delayed_notifier.delayed_queue import DelayedQueue
        from delayed_notifier.smtp_client import SMTPClient, SMTPConfig
        from delayed_notifier.worker import DispatchWorker

        queue = DelayedQueue.from_url("redis://localhost:6379/0")
        sender = SMTPClient(SMTPConfig(sender_email="noreply@example.com", host="localhost", port=25))
        worker = DispatchWorker(queue, sender, tick_interval=1.0)
        await worker.run(stop_event)
"""

__version__ = "0.1.0"

"""
Webhook notifications for pipeline lifecycle events.

Author: Delivery Pipeline Team
"""

import json
from typing import Optional

import requests

from delivery_pipeline.config.settings import NotificationSettings
from delivery_pipeline.exceptions import NotificationDeliveryFailed
from delivery_pipeline.schemas.events import EventType, NotificationEvent
from delivery_pipeline.services.event_bus import EventBus
from delivery_pipeline.utils.logging import get_logger
from delivery_pipeline.utils.validators import validate_url_format

logger = get_logger(__name__)

EVENT_HEADLINES = {
    EventType.STARTED: "started",
    EventType.SUCCEEDED: "succeeded",
    EventType.FAILED: "FAILED",
}


def format_message(event: NotificationEvent) -> str:
    """
    Render an event as a chat-friendly message.

    The raw payload is quoted verbatim in a fenced code block under a one
    line summary.
    """
    payload = event.payload
    pipeline_name = payload.get('pipeline_name', 'pipeline')
    build_number = payload.get('build_number')
    headline = f"Pipeline {pipeline_name}"
    if build_number is not None:
        headline += f" #{build_number}"
    headline += f" {EVENT_HEADLINES.get(event.event_type, event.event_type.value)}"

    body = json.dumps(payload, indent=2, sort_keys=True, default=str)
    return f"{headline}\n```\n{body}\n```"


class WebhookNotifier:
    """
    Posts lifecycle events to a chat webhook.

    ``notify`` never raises: delivery problems are logged and dropped, so a
    broken webhook can never fail or roll back a pipeline run.
    """

    def __init__(self, settings: NotificationSettings, session: Optional[requests.Session] = None):
        self.hook_url = settings.hook_url or None
        self.timeout = settings.timeout
        self.session = session or requests.Session()

        if self.hook_url and not validate_url_format(self.hook_url):
            logger.warning("Webhook URL is not a valid http(s) URL, notifications disabled", extra={
                'hook_url': self.hook_url,
            })
            self.hook_url = None

    def attach(self, bus: EventBus) -> None:
        """Subscribe to every lifecycle event on the bus."""
        bus.subscribe(self.notify)

    def notify(self, event: NotificationEvent) -> None:
        """Log the event and post it to the webhook. Never raises."""
        logger.info("Pipeline event", extra={
            'pipeline_run_id': event.pipeline_run_id,
            'event_type': event.event_type.value,
            'payload': event.payload,
        })

        if not self.hook_url:
            return

        try:
            self._post(format_message(event))
        except NotificationDeliveryFailed as e:
            logger.warning("Notification delivery failed", extra={
                'pipeline_run_id': event.pipeline_run_id,
                'event_type': event.event_type.value,
                'error': str(e),
            })
        except Exception:
            logger.exception("Notification delivery failed", extra={
                'pipeline_run_id': event.pipeline_run_id,
                'event_type': event.event_type.value,
            })

    def _post(self, message: str) -> None:
        try:
            response = self.session.post(self.hook_url, json={'text': message}, timeout=self.timeout)
            response.raise_for_status()
        except requests.HTTPError as e:
            raise NotificationDeliveryFailed(
                f"Webhook returned HTTP {e.response.status_code if e.response is not None else 'error'}",
                details={'hook_url': self.hook_url},
            ) from e
        except requests.RequestException as e:
            raise NotificationDeliveryFailed(
                f"Webhook request failed: {e}",
                details={'hook_url': self.hook_url},
            ) from e

"""Reservation event publishing.

Events are fire-and-forget: they are sent after the store commit and a
delivery failure is logged, never raised back into the transition.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, Protocol

import pika
from circuitbreaker import CircuitBreakerError, circuit

from .config import Settings
from .domain import Reservation

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def publish(self, event: str, reservation: Reservation) -> None: ...


def reservation_event(event: str, reservation: Reservation) -> Dict[str, Any]:
    return {
        "event": event,
        "reservation_id": reservation.id,
        "status": reservation.status.value,
        "machines": [
            {"machine_id": a.machine_id, "occupancy": a.occupancy} for a in reservation.machines
        ],
        "customer_name": reservation.customer.name,
        "start_time": reservation.start_time.isoformat(),
        "end_time": reservation.end_time.isoformat(),
        "actual_started_at": reservation.actual_started_at.isoformat() if reservation.actual_started_at else None,
        "actual_ended_at": reservation.actual_ended_at.isoformat() if reservation.actual_ended_at else None,
    }


class LogNotifier:
    """Used when no broker is configured."""

    def publish(self, event: str, reservation: Reservation) -> None:
        logger.info("[notify] %s reservation=%s status=%s", event, reservation.id, reservation.status.value)


class QueueNotifier:
    """Publishes persistent JSON messages to a durable RabbitMQ queue."""

    def __init__(self, host: str, queue: str, failure_threshold: int = 5, recovery_timeout: int = 60) -> None:
        self.host = host
        self.queue = queue
        self._send = circuit(failure_threshold=failure_threshold, recovery_timeout=recovery_timeout)(
            self._send_once
        )

    def _send_once(self, body: str) -> None:
        connection = pika.BlockingConnection(
            pika.ConnectionParameters(host=self.host, socket_timeout=2, blocked_connection_timeout=2)
        )
        try:
            channel = connection.channel()
            channel.queue_declare(queue=self.queue, durable=True)
            channel.basic_publish(
                exchange="",
                routing_key=self.queue,
                body=body,
                properties=pika.BasicProperties(delivery_mode=2, content_type="application/json"),
            )
        finally:
            connection.close()

    def publish(self, event: str, reservation: Reservation) -> None:
        message = reservation_event(event, reservation)
        try:
            self._send(json.dumps(message))
        except CircuitBreakerError:
            logger.warning("[RabbitMQ] circuit open, dropped %s for reservation %s", event, reservation.id)
            return
        logger.info("[RabbitMQ] sent %s for reservation %s", event, reservation.id)


def notify_safely(notifier: Notifier, event: str, reservation: Reservation) -> None:
    try:
        notifier.publish(event, reservation)
    except Exception as exc:
        logger.error("[notify] %s for reservation %s failed: %s", event, reservation.id, exc)


def build_notifier(settings: Settings) -> Notifier:
    if not settings.notifications_enabled:
        return LogNotifier()
    return QueueNotifier(
        host=settings.rabbitmq_host,
        queue=settings.notification_queue,
        failure_threshold=settings.notification_failure_threshold,
        recovery_timeout=settings.notification_recovery_timeout,
    )

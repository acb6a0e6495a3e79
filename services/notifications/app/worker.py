"""
Notifications worker: consumes OrderCreated events from the SQS queue that is
subscribed to the order events topic and sends (logs) a confirmation email.

Messages that cannot be processed are left on the queue; after the queue's
max receive count the redrive policy moves them to the dead-letter queue.
"""

import json
import logging
import os
import sys
import time
from typing import Callable

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from services.order_intake.app.errors import OrderServiceError
from services.order_intake.app.events import OrderCreatedEvent, parse_event
from services.order_intake.app.logging_setup import setup_logging

logger = logging.getLogger(__name__)

WAIT_TIME_S = 20
RETRY_DELAY_S = 5.0


def unwrap_notification(body: str) -> OrderCreatedEvent:
    # SNS -> SQS delivery wraps the published body in a notification document.
    wrapper = json.loads(body)
    return parse_event(wrapper["Message"])


def summarize_order(event: OrderCreatedEvent) -> dict:
    return {
        "eventType": event.event_type,
        "orderId": event.order_id,
        "customerId": event.customer_id,
        "itemCount": len(event.items),
        "total": round(sum(item.price * item.quantity for item in event.items), 2),
    }


class NotificationWorker:
    def __init__(
        self,
        sqs,
        queue_url: str,
        wait_time_s: int = WAIT_TIME_S,
        retry_delay_s: float = RETRY_DELAY_S,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._sqs = sqs
        self._queue_url = queue_url
        self._wait_time_s = wait_time_s
        self._retry_delay_s = retry_delay_s
        self._sleep = sleep

    def process_message(self, message: dict) -> bool:
        try:
            event = unwrap_notification(message["Body"])
        except (ValueError, KeyError, TypeError, OrderServiceError) as e:
            logger.error("leaving message %s on the queue: %s", message.get("MessageId"), e)
            return False

        logger.info("sending fake email for order: %s", summarize_order(event))
        self._sqs.delete_message(QueueUrl=self._queue_url, ReceiptHandle=message["ReceiptHandle"])
        logger.info("message %s processed and deleted", message.get("MessageId"))
        return True

    def poll_once(self) -> int:
        """Receive at most one message and process it. Returns the number handled."""
        resp = self._sqs.receive_message(
            QueueUrl=self._queue_url,
            MaxNumberOfMessages=1,
            WaitTimeSeconds=self._wait_time_s,
        )
        return sum(1 for m in resp.get("Messages", []) if self.process_message(m))

    def run(self, should_stop: Callable[[], bool] = lambda: False) -> None:
        while not should_stop():
            try:
                self.poll_once()
            except (BotoCoreError, ClientError) as e:
                logger.error("error polling %s: %s", self._queue_url, e)
                self._sleep(self._retry_delay_s)


def main() -> None:
    setup_logging(os.getenv("LOG_LEVEL", "INFO").upper())

    queue_url = os.getenv("SQS_QUEUE_URL")
    if not queue_url:
        logger.critical("SQS_QUEUE_URL environment variable is required")
        sys.exit(1)

    sqs = boto3.client(
        "sqs",
        region_name=os.getenv("AWS_REGION") or os.getenv("AWS_DEFAULT_REGION") or "us-east-1",
        endpoint_url=os.getenv("AWS_ENDPOINT_URL") or None,
    )
    logger.info("Starting notifications worker, listening on %s", queue_url)
    NotificationWorker(sqs, queue_url).run()


if __name__ == "__main__":
    main()

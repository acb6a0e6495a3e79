import copy
import logging
import math
import socket
import threading
import uuid
from dataclasses import dataclass
from typing import Callable, Optional, Protocol
from urllib.parse import urlparse

import boto3
import pika
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    ReadTimeoutError,
)
from pika.adapters.utils.connection_workflow import (
    AMQPConnectionWorkflowFailed,
    AMQPConnectorException,
    AMQPConnectorPhaseErrorBase,
    AMQPConnectorStackTimeout,
)
from pika.exceptions import AMQPChannelError, AMQPConnectionError, AMQPError, ChannelClosedByBroker, NackError

from .config import Settings
from .errors import ErrorKind, OrderServiceError, configuration_error, transport_error
from .events import ORDER_CREATED, OrderCreatedEvent, serialize_event

logger = logging.getLogger(__name__)

ROUTING_KEY = "orders.created"

_THROTTLING_CODES = {"Throttling", "ThrottlingException", "ThrottledException", "RequestThrottled", "KMSThrottlingException"}
_AUTH_CODES = {
    "AuthorizationError",
    "AccessDenied",
    "AccessDeniedException",
    "InvalidClientTokenId",
    "UnrecognizedClientException",
    "ExpiredToken",
    "SignatureDoesNotMatch",
}
_NOT_FOUND_CODES = {"NotFound", "NotFoundException", "ResourceNotFoundException"}


class MessageBus(Protocol):
    """Sends one message body to a destination and returns the bus-assigned id.

    ``timeout_s`` caps this one call below the bus's configured deadline; None
    means the configured deadline. Implementations raise
    OrderServiceError(kind=TRANSPORT) on any failure and must be safe to call
    from several request threads at once.
    """

    def send(self, destination: str, body: str, timeout_s: Optional[float] = None) -> str:
        ...


def _client_error_reason(e: ClientError) -> str:
    code = e.response.get("Error", {}).get("Code", "")
    if code in _THROTTLING_CODES:
        return "throttled"
    if code in _AUTH_CODES:
        return "unauthorized"
    if code in _NOT_FOUND_CODES:
        return "not_found"
    return "unknown"


def _quantize_timeout(timeout_s: float) -> float:
    # Round down to 100ms so per-call clients stay few and never overrun the deadline.
    return max(0.1, math.floor(timeout_s * 10) / 10)


def _sns_config(timeout_s: float) -> Config:
    return Config(connect_timeout=timeout_s, read_timeout=timeout_s, retries={"total_max_attempts": 1})


class SnsMessageBus:
    def __init__(self, client, timeout_s: Optional[float] = None, client_factory: Optional[Callable] = None):
        # boto3 clients are thread-safe; one is shared by every request.
        self._client = client
        self._timeout_s = timeout_s
        self._client_factory = client_factory
        self._clients_by_timeout = {}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "SnsMessageBus":
        endpoint = settings.endpoint_override
        if endpoint is not None:
            parsed = urlparse(endpoint)
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                raise configuration_error(f"AWS_ENDPOINT_URL is not a valid http(s) URL: {endpoint!r}")

        def make_client(timeout_s: float):
            return boto3.client("sns", region_name=settings.region, endpoint_url=endpoint, config=_sns_config(timeout_s))

        try:
            client = make_client(settings.publish_timeout_s)
        except (BotoCoreError, ValueError) as e:
            raise configuration_error(f"unable to create SNS client: {e}") from e
        return cls(client, timeout_s=settings.publish_timeout_s, client_factory=make_client)

    def _client_for(self, timeout_s: Optional[float]):
        if timeout_s is None or self._client_factory is None:
            return self._client
        if self._timeout_s is not None and timeout_s >= self._timeout_s:
            return self._client
        key = _quantize_timeout(timeout_s)
        with self._lock:
            client = self._clients_by_timeout.get(key)
            if client is None:
                client = self._clients_by_timeout[key] = self._client_factory(key)
        return client

    def send(self, destination: str, body: str, timeout_s: Optional[float] = None) -> str:
        try:
            resp = self._client_for(timeout_s).publish(TopicArn=destination, Message=body)
        except (ConnectTimeoutError, ReadTimeoutError) as e:
            raise transport_error("timeout", f"SNS publish timed out: {e}") from e
        except EndpointConnectionError as e:
            raise transport_error("unreachable", f"SNS endpoint unreachable: {e}") from e
        except NoCredentialsError as e:
            raise transport_error("unauthorized", f"no AWS credentials: {e}") from e
        except ClientError as e:
            raise transport_error(_client_error_reason(e), f"SNS publish failed: {e}") from e
        except BotoCoreError as e:
            raise transport_error("unknown", f"SNS publish failed: {e}") from e
        return resp["MessageId"]


def _is_timeout(error) -> bool:
    """True when a pika connection failure was caused by a deadline."""
    if isinstance(error, (socket.timeout, AMQPConnectorStackTimeout)):
        return True
    if isinstance(error, AMQPConnectorPhaseErrorBase):
        return _is_timeout(error.exception)
    if isinstance(error, AMQPConnectionWorkflowFailed):
        return any(_is_timeout(e) for e in error.exceptions)
    if isinstance(error, AMQPConnectionError):
        return any(_is_timeout(arg) for arg in error.args)
    return False


class RabbitMqMessageBus:
    """Publishes to a durable topic exchange named by the destination.

    pika connections must not be shared between threads, so each send opens
    and closes its own connection.
    """

    def __init__(self, url: str, timeout_s: float, connect: Callable = pika.BlockingConnection):
        parsed = urlparse(url)
        if parsed.scheme not in ("amqp", "amqps"):
            raise configuration_error("RABBITMQ_URL must use the amqp:// or amqps:// scheme")
        try:
            params = pika.URLParameters(url)
        except (ValueError, TypeError) as e:
            raise configuration_error(f"RABBITMQ_URL is malformed: {e}") from e
        params.connection_attempts = 1
        self._params = params
        self._timeout_s = timeout_s
        self._connect = connect

    def _params_for(self, timeout_s: Optional[float]) -> pika.URLParameters:
        if timeout_s is None or timeout_s > self._timeout_s:
            timeout_s = self._timeout_s
        params = copy.copy(self._params)
        params.socket_timeout = timeout_s
        params.stack_timeout = timeout_s
        params.blocked_connection_timeout = timeout_s
        return params

    def send(self, destination: str, body: str, timeout_s: Optional[float] = None) -> str:
        message_id = str(uuid.uuid4())
        try:
            conn = self._connect(self._params_for(timeout_s))
        except (socket.timeout, AMQPConnectionError, AMQPConnectorException) as e:
            if _is_timeout(e):
                raise transport_error("timeout", f"RabbitMQ connect timed out: {e!r}") from e
            raise transport_error("unreachable", f"RabbitMQ unreachable: {e!r}") from e

        try:
            ch = conn.channel()
            ch.exchange_declare(exchange=destination, exchange_type="topic", durable=True)
            ch.confirm_delivery()
            ch.basic_publish(
                exchange=destination,
                routing_key=ROUTING_KEY,
                body=body.encode("utf-8"),
                properties=pika.BasicProperties(
                    content_type="application/json",
                    delivery_mode=pika.DeliveryMode.Persistent,
                    message_id=message_id,
                    type=ORDER_CREATED,
                ),
            )
        except NackError as e:
            raise transport_error("rejected", f"RabbitMQ nacked the message: {e!r}") from e
        except ChannelClosedByBroker as e:
            reason = {403: "unauthorized", 404: "not_found"}.get(e.reply_code, "rejected")
            raise transport_error(reason, f"RabbitMQ closed the channel: {e!r}") from e
        except socket.timeout as e:
            raise transport_error("timeout", f"RabbitMQ publish timed out: {e!r}") from e
        except (AMQPChannelError, AMQPConnectionError) as e:
            raise transport_error("unknown", f"RabbitMQ publish failed: {e!r}") from e
        finally:
            try:
                conn.close()
            except AMQPError as e:
                logger.debug("ignoring error while closing RabbitMQ connection: %r", e)
        return message_id


@dataclass(frozen=True)
class PublishResult:
    message_id: Optional[str] = None
    error: Optional[OrderServiceError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def succeeded(cls, message_id: str) -> "PublishResult":
        return cls(message_id=message_id)

    @classmethod
    def failed(cls, error: OrderServiceError) -> "PublishResult":
        return cls(error=error)


class Publisher:
    def __init__(self, bus: MessageBus, destination_id: str):
        if not destination_id or not destination_id.strip():
            raise configuration_error("an order events destination is required")
        self._bus = bus
        self._destination = destination_id

    @property
    def destination(self) -> str:
        return self._destination

    def publish(self, event: OrderCreatedEvent, timeout_s: Optional[float] = None) -> PublishResult:
        """Serialize ``event`` once and send it in a single bus call.

        ``timeout_s`` is the caller's remaining deadline; the bus call is cut
        short to it, and an already elapsed deadline fails without sending.
        Never raises for bus or encoding problems: those come back as a failed
        PublishResult tagged SERIALIZATION or TRANSPORT. There is no retry here;
        a second send of the same event would be a visible duplicate downstream.
        """
        if timeout_s is not None and timeout_s <= 0:
            logger.warning("deadline for order %s elapsed before publishing", event.order_id)
            return PublishResult.failed(transport_error("timeout", "deadline elapsed before publish"))

        try:
            body = serialize_event(event)
        except OrderServiceError as e:
            logger.exception("could not serialize %s for order %s", ORDER_CREATED, event.order_id)
            return PublishResult.failed(e)

        try:
            message_id = self._bus.send(self._destination, body, timeout_s=timeout_s)
        except OrderServiceError as e:
            if e.kind is not ErrorKind.TRANSPORT:
                e = transport_error("unknown", e.message)
            logger.warning("publish of order %s failed (%s): %s", event.order_id, e.reason, e.message)
            return PublishResult.failed(e)
        except Exception as e:
            logger.exception("unexpected error publishing order %s", event.order_id)
            return PublishResult.failed(transport_error("unknown", f"{type(e).__name__}: {e}"))

        logger.info("published %s for order %s as message %s", ORDER_CREATED, event.order_id, message_id)
        return PublishResult.succeeded(message_id)


def create_publisher(settings: Settings) -> Publisher:
    """Build the process-wide publisher. Raises OrderServiceError(kind=CONFIGURATION)."""
    if not settings.destination_id:
        if settings.backend == "sns":
            raise configuration_error("ORDER_EVENTS_TOPIC_ARN is required")
        raise configuration_error("ORDER_EVENTS_EXCHANGE is required")

    if settings.backend == "sns":
        if not settings.region:
            raise configuration_error("AWS_REGION is required")
        bus = SnsMessageBus.from_settings(settings)
    elif settings.backend == "rabbitmq":
        bus = RabbitMqMessageBus(settings.rabbitmq_url, settings.publish_timeout_s)
    else:
        raise configuration_error(f"unknown MESSAGE_BACKEND {settings.backend!r}")

    return Publisher(bus, settings.destination_id)

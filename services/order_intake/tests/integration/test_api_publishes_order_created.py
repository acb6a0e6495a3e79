import json
import time
from pathlib import Path

import pika
import pytest
from fastapi.testclient import TestClient
from jsonschema import validate as jsonschema_validate
from testcontainers.rabbitmq import RabbitMqContainer

from services.order_intake.app.main import create_app

pytestmark = pytest.mark.integration

EXCHANGE = "orders.events"


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[4]  # services/order_intake/tests/integration -> repo root


def _load_schema() -> dict:
    return json.loads((_repo_root() / "events" / "order-created.schema.json").read_text(encoding="utf-8"))


def test_rest_api_publishes_schema_valid_event(monkeypatch):
    # Real RabbitMQ broker (container): check both REST behaviour and the message contract.
    with RabbitMqContainer("rabbitmq:3.13-management") as rabbit:
        host = rabbit.get_container_host_ip()
        port = rabbit.get_exposed_port(5672)
        rabbit_url = f"amqp://guest:guest@{host}:{port}/"

        monkeypatch.setenv("MESSAGE_BACKEND", "rabbitmq")
        monkeypatch.setenv("RABBITMQ_URL", rabbit_url)
        monkeypatch.setenv("ORDER_EVENTS_EXCHANGE", EXCHANGE)

        conn = pika.BlockingConnection(pika.URLParameters(rabbit_url))
        ch = conn.channel()
        ch.exchange_declare(exchange=EXCHANGE, exchange_type="topic", durable=True)
        q = ch.queue_declare(queue="", exclusive=True).method.queue
        ch.queue_bind(queue=q, exchange=EXCHANGE, routing_key="#")

        order = {
            "orderId": "o-999",
            "customerId": "c-1",
            "items": [{"productId": "SKU-999", "quantity": 1, "price": 10.5}],
        }
        with TestClient(create_app()) as client:
            r = client.post("/orders", json=order)
        assert r.status_code == 201
        assert r.json() == order

        deadline = time.time() + 10
        body = None
        while time.time() < deadline:
            method, _, b = ch.basic_get(queue=q, auto_ack=True)
            if method is not None:
                body = b
                break
            time.sleep(0.2)

        conn.close()
        assert body is not None, "Expected event to be published after POST /orders"

        msg = json.loads(body.decode("utf-8"))
        assert msg == {"eventType": "OrderCreated", **order}
        jsonschema_validate(instance=msg, schema=_load_schema())

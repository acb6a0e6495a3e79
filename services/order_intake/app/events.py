import json
from pathlib import Path
from typing import List, Literal

from jsonschema import ValidationError as SchemaValidationError
from jsonschema import validate as jsonschema_validate
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic_core import PydanticSerializationError

from .domain import Order, OrderItem
from .errors import serialization_error, validation_error

ORDER_CREATED = "OrderCreated"

_SCHEMA_CACHE = None


def _repo_root() -> Path:
    # events.py -> app -> order_intake -> services -> repo root
    return Path(__file__).resolve().parents[3]


def load_event_schema() -> dict:
    global _SCHEMA_CACHE
    if _SCHEMA_CACHE is None:
        schema_path = _repo_root() / "events" / "order-created.schema.json"
        _SCHEMA_CACHE = json.loads(schema_path.read_text(encoding="utf-8"))
    return _SCHEMA_CACHE


class OrderCreatedEvent(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    event_type: Literal["OrderCreated"] = Field(default=ORDER_CREATED, alias="eventType")
    order_id: str = Field(alias="orderId")
    customer_id: str = Field(alias="customerId")
    items: List[OrderItem]


def build_order_created_event(order: Order) -> OrderCreatedEvent:
    return OrderCreatedEvent(
        eventType=ORDER_CREATED,
        orderId=order.order_id,
        customerId=order.customer_id,
        items=list(order.items),
    )


def serialize_event(event: OrderCreatedEvent) -> str:
    """Encode an envelope as the JSON message body sent to the bus.

    The encoded document is checked against events/order-created.schema.json,
    the contract consumers code against. Any failure here is a defect in this
    service, never in the caller's input, and is raised as a SERIALIZATION error.
    """
    try:
        text = event.model_dump_json(by_alias=True)
    except PydanticSerializationError as e:
        raise serialization_error(f"unable to encode {ORDER_CREATED} event: {e}") from e

    try:
        jsonschema_validate(instance=json.loads(text), schema=load_event_schema())
    except SchemaValidationError as e:
        raise serialization_error(f"{ORDER_CREATED} event violates schema: {e.message}") from e
    return text


def parse_event(text) -> OrderCreatedEvent:
    try:
        return OrderCreatedEvent.model_validate_json(text)
    except ValidationError as e:
        raise validation_error(f"not an {ORDER_CREATED} event: {e.error_count()} error(s)") from e

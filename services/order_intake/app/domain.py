from typing import List

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import validation_error

_MODEL_CONFIG = ConfigDict(frozen=True, populate_by_name=True)


class OrderItem(BaseModel):
    model_config = _MODEL_CONFIG

    # strict: "2" is not a quantity and true is not a price.
    product_id: str = Field(alias="productId", min_length=1, strict=True)
    quantity: int = Field(gt=0, strict=True)
    price: float = Field(ge=0, allow_inf_nan=False, strict=True)


class Order(BaseModel):
    model_config = _MODEL_CONFIG

    order_id: str = Field(alias="orderId", min_length=1, strict=True)
    customer_id: str = Field(alias="customerId", min_length=1, strict=True)
    items: List[OrderItem]

    def to_payload(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


def _describe(exc: ValidationError) -> str:
    problems = []
    for err in exc.errors(include_url=False):
        field = ".".join(str(part) for part in err["loc"]) or "body"
        problems.append(f"{field}: {err['msg']}")
    return "; ".join(problems)


def parse_order(body: bytes) -> Order:
    """Decode a request body into an Order.

    Raises OrderServiceError(kind=VALIDATION) naming every offending field when
    the body is not JSON, is missing a field, has a field of the wrong type, or
    breaks a structural rule (empty ids, non-positive quantity, negative price).
    """
    try:
        return Order.model_validate_json(body)
    except ValidationError as e:
        raise validation_error(_describe(e)) from e

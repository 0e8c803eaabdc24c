# vamo/transport/schemas.py
"""
Request bodies of the notification endpoints.

Field names on the wire are camelCase (what the ride/delivery backends
already send); Python attributes are snake_case.
"""
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from vamo.core.dispatch.domain import RecipientRole

Identifier = int | str


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class _TripOfferIn(_CamelModel):
    request_id: Identifier
    pickup_address: str = Field(min_length=1, max_length=500)
    destination_address: str = Field(min_length=1, max_length=500)
    pickup_latitude: float = Field(ge=-90, le=90)
    pickup_longitude: float = Field(ge=-180, le=180)
    destination_latitude: float | None = Field(default=None, ge=-90, le=90)
    destination_longitude: float | None = Field(default=None, ge=-180, le=180)
    estimated_price: int | float = Field(gt=0)
    distance: float | str | None = None
    duration: float | str | None = None
    payment_method: str | None = Field(default=None, max_length=50)
    client_id: Identifier


class RideRequestIn(_TripOfferIn):
    trip_id: Identifier
    max_drivers: int | None = Field(default=None, ge=1, le=100)


class DeliveryRequestIn(_TripOfferIn):
    delivery_id: Identifier
    package_size: str | None = Field(default=None, max_length=50)
    package_description: str | None = Field(default=None, max_length=500)
    max_delivery_persons: int | None = Field(default=None, ge=1, le=100)


class TripStatusIn(_CamelModel):
    client_id: Identifier
    trip_id: Identifier
    status: str = Field(min_length=1, max_length=64)
    driver_info: dict[str, Any] = Field(default_factory=dict)


class DeliveryStatusIn(_CamelModel):
    client_id: Identifier
    delivery_id: Identifier
    status: str = Field(min_length=1, max_length=64)
    delivery_person_info: dict[str, Any] = Field(default_factory=dict)


class DirectMessageIn(_CamelModel):
    recipient_id: Identifier
    role: RecipientRole = RecipientRole.CLIENT
    title: str = Field(min_length=1, max_length=200)
    body: str = Field(min_length=1, max_length=2000)
    data: dict[str, Any] = Field(default_factory=dict)


class CheckReceiptsIn(_CamelModel):
    ticket_ids: list[str] = Field(min_length=1, max_length=10000)

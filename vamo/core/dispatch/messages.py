# vamo/core/dispatch/messages.py
"""
Notification requests for the rider/courier apps.

Texts are French (the apps ship in French only). ``data.type`` carries the
category the mobile apps switch on, and is also the key looked up in the
recipient's notification preferences.
"""
from __future__ import annotations

import math
from typing import Any, Mapping

from vamo.core.dispatch.domain import NearestK, NotificationRequest, RecipientRole, SingleRecipient
from vamo.core.dispatch.errors import DispatchConfigError
from vamo.core.dispatch.selector import coerce_role

RIDE_REQUEST = "ride_request"
DELIVERY_REQUEST = "delivery_request"

TRIP_UPDATES_CHANNEL = "trip_updates"
DELIVERY_UPDATES_CHANNEL = "delivery_updates"

# Fields forwarded from the request payload to the app, in order.
_RIDE_FIELDS = (
    ("requestId", "requestId"),
    ("tripId", "tripId"),
    ("pickup", "pickupAddress"),
    ("destination", "destinationAddress"),
    ("distance", "distance"),
    ("duration", "duration"),
    ("estimatedPrice", "estimatedPrice"),
    ("paymentMethod", "paymentMethod"),
    ("clientId", "clientId"),
    ("pickupLatitude", "pickupLatitude"),
    ("pickupLongitude", "pickupLongitude"),
    ("destinationLatitude", "destinationLatitude"),
    ("destinationLongitude", "destinationLongitude"),
)

_DELIVERY_FIELDS = (
    ("requestId", "requestId"),
    ("deliveryId", "deliveryId"),
    ("pickup", "pickupAddress"),
    ("destination", "destinationAddress"),
    ("packageSize", "packageSize"),
    ("packageDescription", "packageDescription"),
    ("distance", "distance"),
    ("duration", "duration"),
    ("estimatedPrice", "estimatedPrice"),
    ("paymentMethod", "paymentMethod"),
    ("clientId", "clientId"),
    ("pickupLatitude", "pickupLatitude"),
    ("pickupLongitude", "pickupLongitude"),
    ("destinationLatitude", "destinationLatitude"),
    ("destinationLongitude", "destinationLongitude"),
)

# status -> (title, body template); ``{name}`` is the provider's display name.
TRIP_STATUS_TEXTS: dict[str, tuple[str, str]] = {
    "driver_assigned": ("Chauffeur assigné", "{name} va venir vous chercher"),
    "driver_arrived": ("Chauffeur arrivé", "{name} est arrivé au point de rendez-vous"),
    "trip_started": ("Voyage commencé", "Votre voyage a commencé. Bon voyage !"),
    "trip_completed": ("Voyage terminé", "Vous êtes arrivé à destination. Évaluez votre chauffeur !"),
}
TRIP_STATUS_FALLBACK = ("Mise à jour de voyage", "Votre voyage a été mis à jour")

DELIVERY_STATUS_TEXTS: dict[str, tuple[str, str]] = {
    "delivery_person_assigned": ("Livreur assigné", "{name} va récupérer votre colis"),
    "pickup_arrived": ("Livreur au point de récupération", "Votre livreur est arrivé pour récupérer le colis"),
    "package_collected": ("Colis récupéré", "Votre colis a été récupéré et est en route vers vous"),
    "delivery_completed": ("Livraison terminée", "Votre colis a été livré avec succès !"),
}
DELIVERY_STATUS_FALLBACK = ("Mise à jour de livraison", "Votre livraison a été mise à jour")


def _coordinate(data: Mapping[str, Any], key: str) -> float:
    value = data.get(key)
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise DispatchConfigError(f"{key} must be a number, got {value!r}") from None
    if not math.isfinite(number):
        raise DispatchConfigError(f"{key} must be finite, got {value!r}")
    return number


def _forward(data: Mapping[str, Any], fields: tuple[tuple[str, str], ...]) -> dict[str, Any]:
    return {out: data.get(src) for out, src in fields}


def ride_request(data: Mapping[str, Any], *, k: int = 5) -> NotificationRequest:
    """Offer a new trip to the ``k`` nearest available drivers."""
    return NotificationRequest(
        category=RIDE_REQUEST,
        title="Nouvelle demande de course",
        body=f"Course depuis {data.get('pickupAddress')} - {data.get('estimatedPrice')} FCFA",
        targeting=NearestK(
            lat=_coordinate(data, "pickupLatitude"),
            lng=_coordinate(data, "pickupLongitude"),
            role=RecipientRole.DRIVER,
            k=k,
        ),
        payload=_forward(data, _RIDE_FIELDS),
        sound="ride-request.wav",
        priority="high",
        channel_id="ride_requests",
    )


def delivery_request(data: Mapping[str, Any], *, k: int = 5) -> NotificationRequest:
    """Offer a new delivery to the ``k`` nearest available couriers."""
    return NotificationRequest(
        category=DELIVERY_REQUEST,
        title="Nouvelle demande de livraison",
        body=f"Livraison depuis {data.get('pickupAddress')} - {data.get('estimatedPrice')} FCFA",
        targeting=NearestK(
            lat=_coordinate(data, "pickupLatitude"),
            lng=_coordinate(data, "pickupLongitude"),
            role=RecipientRole.COURIER,
            k=k,
        ),
        payload=_forward(data, _DELIVERY_FIELDS),
        sound="delivery-request.wav",
        priority="high",
        channel_id="delivery_requests",
    )


def trip_status(
    client_id: str | int,
    trip_id: Any,
    status: str,
    driver_info: Mapping[str, Any] | None = None,
) -> NotificationRequest:
    driver_info = dict(driver_info or {})
    title, body = TRIP_STATUS_TEXTS.get(status, TRIP_STATUS_FALLBACK)
    return NotificationRequest(
        category=status,
        title=title,
        body=body.format(name=driver_info.get("name") or "Votre chauffeur"),
        targeting=SingleRecipient(recipient_id=client_id, role=RecipientRole.CLIENT),
        payload={"tripId": trip_id, "driverInfo": driver_info},
        channel_id=TRIP_UPDATES_CHANNEL,
    )


def delivery_status(
    client_id: str | int,
    delivery_id: Any,
    status: str,
    courier_info: Mapping[str, Any] | None = None,
) -> NotificationRequest:
    courier_info = dict(courier_info or {})
    title, body = DELIVERY_STATUS_TEXTS.get(status, DELIVERY_STATUS_FALLBACK)
    return NotificationRequest(
        category=status,
        title=title,
        body=body.format(name=courier_info.get("name") or "Votre livreur"),
        targeting=SingleRecipient(recipient_id=client_id, role=RecipientRole.CLIENT),
        payload={"deliveryId": delivery_id, "deliveryPersonInfo": courier_info},
        channel_id=DELIVERY_UPDATES_CHANNEL,
    )


def direct_message(
    recipient_id: str | int,
    role: RecipientRole | str,
    title: str,
    body: str,
    data: Mapping[str, Any] | None = None,
) -> NotificationRequest:
    """Free-form message to one client, driver or courier (``data.type`` defaults to ``general``)."""
    payload = dict(data or {})
    category = str(payload.pop("type", None) or "general")
    return NotificationRequest(
        category=category,
        title=title,
        body=body,
        targeting=SingleRecipient(recipient_id=recipient_id, role=coerce_role(role)),
        payload=payload,
    )

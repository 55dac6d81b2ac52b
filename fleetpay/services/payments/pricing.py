"""Delivery fee computation used to size the payment authorization."""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from fleetpay.common.config import settings
from fleetpay.common.errors import InvalidInput

BASE_FEE = Decimal("15")
INCLUDED_MILES = Decimal("4")
PER_MILE_AFTER = Decimal("1.75")
LONG_DISTANCE_MILES = Decimal("40")
LONG_DISTANCE_FEE = Decimal("15")
MAX_MILES = Decimal("60")
MAX_WEIGHT_LBS = Decimal("100")
HEAVY_WEIGHT_LBS = Decimal("70")
MEDIUM_WEIGHT_LBS = Decimal("40")
HEAVY_SURCHARGE = Decimal("20")
MEDIUM_SURCHARGE = Decimal("10")
PER_STOP_FEE = Decimal("6")
RUSH_FEE = Decimal("10")
SIGNATURE_FEE = Decimal("5")


@dataclass(frozen=True)
class DeliveryQuote:
    amount_cents: int
    long_distance: bool
    heavy_item: bool
    breakdown: dict[str, str]


def _money(value: Decimal) -> Decimal:
    return value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def compute_delivery_price(
    miles: float,
    weight_lbs: float,
    stops: int = 0,
    rush: bool = False,
    signature_required: bool = False,
    heavy_item_acknowledged: bool = False,
) -> DeliveryQuote:
    """Price one delivery. Raises InvalidInput for requests outside the standard service."""

    distance = Decimal(str(miles))
    weight = Decimal(str(weight_lbs))
    stops = max(0, int(stops))

    if distance <= 0:
        raise InvalidInput("miles must be greater than 0", reason="InvalidMiles")
    if weight <= 0:
        raise InvalidInput("weight must be greater than 0", reason="InvalidWeight")
    if distance > MAX_MILES:
        raise InvalidInput("deliveries over 60 miles require a special request", reason="SpecialRequestRequired")
    if weight > MAX_WEIGHT_LBS:
        raise InvalidInput("items over 100 lbs require a special request", reason="SpecialRequestRequired")
    if weight > HEAVY_WEIGHT_LBS and not heavy_item_acknowledged:
        raise InvalidInput("heavy item acknowledgment required over 70 lbs", reason="HeavyItemNotAcknowledged")

    extra_miles = _money(max(Decimal("0"), distance - INCLUDED_MILES) * PER_MILE_AFTER)
    long_distance = distance > LONG_DISTANCE_MILES

    heavy_item = weight > HEAVY_WEIGHT_LBS
    if heavy_item:
        weight_surcharge = HEAVY_SURCHARGE
    elif weight > MEDIUM_WEIGHT_LBS:
        weight_surcharge = MEDIUM_SURCHARGE
    else:
        weight_surcharge = Decimal("0")

    parts = {
        "base": BASE_FEE,
        "extra_miles": extra_miles,
        "weight_surcharge": weight_surcharge,
        "long_distance": LONG_DISTANCE_FEE if long_distance else Decimal("0"),
        "stops": PER_STOP_FEE * stops,
        "rush": RUSH_FEE if rush else Decimal("0"),
        "signature": SIGNATURE_FEE if signature_required else Decimal("0"),
    }
    total = _money(sum(parts.values(), Decimal("0")))
    amount_cents = max(settings.min_charge_cents, int(total * 100))

    breakdown = {name: str(_money(value)) for name, value in parts.items()}
    breakdown["total"] = str(total)
    return DeliveryQuote(
        amount_cents=amount_cents,
        long_distance=long_distance,
        heavy_item=heavy_item,
        breakdown=breakdown,
    )

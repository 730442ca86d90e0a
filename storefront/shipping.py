"""
Shipping rates with regional pricing.

Regions are detected from the destination address: state code or name first,
then the postcode, then the country default. Each active provider service
that serves the region yields one option; options are returned cheapest first.
"""
import re
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .config import settings
from .database import get_session
from .logger import log
from .models import ShippingProvider

router = APIRouter(prefix="/api/shipping", tags=["shipping"])

UNKNOWN = "unknown"

# state code -> region
STATE_REGIONS = {
    # Semenanjung (Peninsular Malaysia) + federal territories
    "JHR": "semenanjung", "KDH": "semenanjung", "KTN": "semenanjung",
    "MLK": "semenanjung", "NSN": "semenanjung", "PHG": "semenanjung",
    "PNG": "semenanjung", "PRK": "semenanjung", "PLS": "semenanjung",
    "SGR": "semenanjung", "TRG": "semenanjung", "KUL": "semenanjung",
    "LBN": "semenanjung", "PJY": "semenanjung",
    "SBH": "sabah",
    "SWK": "sarawak",
    "SG": "singapore",
    # Brunei districts
    "BN": "brunei", "BM": "brunei", "BE": "brunei", "TU": "brunei", "TE": "brunei",
}

STATE_NAME_ALIASES = {
    "johor": "JHR", "johore": "JHR", "kedah": "KDH", "kelantan": "KTN",
    "melaka": "MLK", "malacca": "MLK", "negeri sembilan": "NSN",
    "n. sembilan": "NSN", "pahang": "PHG", "pulau pinang": "PNG",
    "penang": "PNG", "perak": "PRK", "perlis": "PLS", "selangor": "SGR",
    "terengganu": "TRG", "trengganu": "TRG", "kuala lumpur": "KUL",
    "kl": "KUL", "labuan": "LBN", "putrajaya": "PJY", "sabah": "SBH",
    "sarawak": "SWK", "singapore": "SG", "singapura": "SG", "brunei": "BN",
    "brunei darussalam": "BN", "brunei-muara": "BM", "belait": "BE",
    "tutong": "TU", "temburong": "TE",
}

COUNTRY_REGIONS = {
    "MY": "semenanjung",  # specific states override
    "SG": "singapore",
    "BN": "brunei",
}

REGION_NAMES = {
    "semenanjung": "Peninsular Malaysia",
    "sabah": "Sabah",
    "sarawak": "Sarawak",
    "singapore": "Singapore",
    "brunei": "Brunei Darussalam",
    UNKNOWN: "Unknown Region",
}

VOLUMETRIC_DIVISOR = Decimal(5000)
MIN_CHARGEABLE_WEIGHT = Decimal("0.5")


class Address(BaseModel):
    country: str
    state: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None


class Dimensions(BaseModel):
    length: float = Field(ge=0, allow_inf_nan=False)
    width: float = Field(ge=0, allow_inf_nan=False)
    height: float = Field(ge=0, allow_inf_nan=False)


class RegionDetection(BaseModel):
    region: str
    confidence: str  # high/medium/low/none
    source: str      # state_code/postal_code/country_code/fallback
    region_name: str
    matched_input: Optional[str] = None


class ShippingOption(BaseModel):
    provider_code: str
    provider_name: str
    service_name: str
    cost: Decimal
    currency: str
    estimated_days: str
    tracking_available: bool = False
    includes_insurance: bool = False
    region: str
    region_name: str
    used_regional_pricing: bool = False
    cost_per_kg: Optional[Decimal] = None


class ShippingRateRequest(BaseModel):
    address: Optional[Address] = None
    # kg; NaN and infinity are rejected as well as negatives
    total_weight: float = Field(ge=0, allow_inf_nan=False)
    dimensions: Optional[Dimensions] = None


def region_name(region: str) -> str:
    return REGION_NAMES.get(region, REGION_NAMES[UNKNOWN])


def state_to_region(state: Optional[str]) -> str:
    if not state:
        return UNKNOWN
    code = state.strip().upper()
    if code in STATE_REGIONS:
        return STATE_REGIONS[code]
    alias = STATE_NAME_ALIASES.get(state.strip().lower())
    if alias:
        return STATE_REGIONS[alias]
    return UNKNOWN


def country_to_region(country: Optional[str]) -> str:
    if not country:
        return UNKNOWN
    return COUNTRY_REGIONS.get(country.strip().upper(), UNKNOWN)


def detect_region(address: Optional[Address]) -> RegionDetection:
    if address is None:
        return RegionDetection(region=UNKNOWN, confidence="none", source="fallback",
                               region_name=region_name(UNKNOWN))

    region = state_to_region(address.state)
    if region != UNKNOWN:
        return RegionDetection(region=region, confidence="high", source="state_code",
                               region_name=region_name(region), matched_input=address.state)

    # postcode ranges only mean something inside the served countries
    if country_to_region(address.country) != UNKNOWN:
        region = detect_region_from_postal_code(address.postal_code)
        if region != UNKNOWN:
            return RegionDetection(region=region, confidence="medium", source="postal_code",
                                   region_name=region_name(region), matched_input=address.postal_code)

    region = country_to_region(address.country)
    if region != UNKNOWN:
        return RegionDetection(region=region, confidence="low", source="country_code",
                               region_name=region_name(region), matched_input=address.country)

    return RegionDetection(region=UNKNOWN, confidence="none", source="fallback",
                           region_name=region_name(UNKNOWN))


def detect_region_from_postal_code(postal_code: Optional[str]) -> str:
    """Malaysian postcode ranges (01-86 peninsula, 87-91 Sabah, 93-98 Sarawak),
    6-digit Singapore codes, Brunei XX9999 codes."""
    if not postal_code:
        return UNKNOWN
    if re.fullmatch(r"[A-Za-z]{2}\d{4}", postal_code.strip()):
        return "brunei"

    digits = re.sub(r"\D", "", postal_code)
    if len(digits) == 6:
        return "singapore"
    if len(digits) != 5:
        return UNKNOWN

    prefix = int(digits[:2])
    if 1 <= prefix <= 86:
        return "semenanjung"
    if 87 <= prefix <= 91:
        return "sabah"
    if 93 <= prefix <= 98:
        return "sarawak"
    return UNKNOWN


def chargeable_weight(weight, dimensions: Optional[Dimensions] = None) -> Decimal:
    result = Decimal(str(weight))
    if dimensions is not None:
        volume = (Decimal(str(dimensions.length)) * Decimal(str(dimensions.width))
                  * Decimal(str(dimensions.height)))
        result = max(result, volume / VOLUMETRIC_DIVISOR)
    return max(result, MIN_CHARGEABLE_WEIGHT)


def _regional_price(service: dict, region: str) -> Optional[dict]:
    for entry in service.get("regional_pricing") or []:
        if entry.get("region") == region:
            return entry
    return None


def is_service_available(service: dict, region: str) -> bool:
    regional = service.get("regional_pricing") or []
    if not regional:
        return True
    if region == UNKNOWN:
        return False
    return _regional_price(service, region) is not None


def service_cost(service: dict, region: str, weight: Decimal):
    """Return (cost, used_regional_pricing, cost_per_kg)."""
    regional = _regional_price(service, region)
    if regional is not None:
        per_kg = Decimal(str(regional["cost_per_kg"]))
        cost = per_kg * weight
        if regional.get("min_cost"):
            cost = max(cost, Decimal(str(regional["min_cost"])))
        return max(cost, Decimal(0)), True, per_kg

    base_cost = Decimal(str(service.get("base_cost", 0)))
    per_kg = service.get("cost_per_kg")
    multiplier = Decimal(str(per_kg)) if per_kg is not None else base_cost * Decimal("0.1")
    cost = base_cost + multiplier * weight
    return max(cost, Decimal(0)), False, Decimal(str(per_kg)) if per_kg is not None else None


def calculate_shipping(
    address: Optional[Address],
    total_weight,
    dimensions: Optional[Dimensions] = None,
    providers: Iterable[dict] = (),
    currency: Optional[str] = None,
) -> List[ShippingOption]:
    """
    Ranked shipping options for a parcel, cheapest first.

    providers are plain dicts: {code, name, is_active, services: [...]}.
    No address or no matching service gives an empty list.
    """
    if address is None or not address.country:
        return []

    detection = detect_region(address)
    region = detection.region
    weight = chargeable_weight(total_weight, dimensions)
    currency = currency or settings.SHIPPING_CURRENCY

    options: List[ShippingOption] = []
    for provider in providers:
        if not provider.get("is_active", True):
            continue
        for service in provider.get("services") or []:
            if not is_service_available(service, region):
                continue
            cost, used_regional, per_kg = service_cost(service, region, weight)
            options.append(ShippingOption(
                provider_code=provider["code"],
                provider_name=provider["name"],
                service_name=service["name"],
                cost=cost.quantize(Decimal(1), rounding=ROUND_HALF_UP),
                currency=currency,
                estimated_days=service.get("estimated_days", ""),
                tracking_available=bool(service.get("tracking_available", False)),
                includes_insurance=bool(service.get("includes_insurance", False)),
                region=region,
                region_name=detection.region_name,
                used_regional_pricing=used_regional,
                cost_per_kg=per_kg,
            ))

    options.sort(key=lambda o: o.cost)
    return options


async def load_providers(session: AsyncSession) -> List[dict]:
    res = await session.execute(
        select(ShippingProvider)
        .where(ShippingProvider.is_active.is_(True))
        .order_by(ShippingProvider.display_order, ShippingProvider.id)
    )
    return [
        {"code": p.code, "name": p.name, "is_active": p.is_active, "services": p.services or []}
        for p in res.scalars().all()
    ]


# 🚚 Расчёт доставки
@router.post("/rates", response_model=List[ShippingOption])
async def shipping_rates(payload: ShippingRateRequest, session: AsyncSession = Depends(get_session)):
    try:
        providers = await load_providers(session)
    except SQLAlchemyError as e:
        # UI renders "no shipping available" instead of an error page
        log.error(f"Failed to load shipping providers: {e}")
        return []
    return calculate_shipping(payload.address, payload.total_weight, payload.dimensions, providers)

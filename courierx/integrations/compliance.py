"""Read-only country regulation lookup used when validating bookings."""
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional, Tuple

from courierx.database.models import ShipmentType


@dataclass(frozen=True)
class Regulation:
    country_code: str
    shipment_type: str
    allowed: bool = True
    max_declared_value: Optional[Decimal] = None
    requires_prescription: bool = False
    notes: Optional[str] = None


MEDICINE_CAP = Decimal("25000")

# Only the rules the booking checks need. Content is maintained by compliance.
_RULES: Dict[Tuple[str, str], Regulation] = {
    ("AE", ShipmentType.MEDICINE.value): Regulation(
        "AE", "medicine", max_declared_value=MEDICINE_CAP, requires_prescription=True,
        notes="Prescription in English or Arabic",
    ),
    ("SA", ShipmentType.MEDICINE.value): Regulation(
        "SA", "medicine", max_declared_value=MEDICINE_CAP, requires_prescription=True,
    ),
    ("JP", ShipmentType.MEDICINE.value): Regulation(
        "JP", "medicine", max_declared_value=MEDICINE_CAP, requires_prescription=True,
        notes="Import certificate needed for many medicines",
    ),
    ("US", ShipmentType.MEDICINE.value): Regulation(
        "US", "medicine", max_declared_value=MEDICINE_CAP, requires_prescription=True,
    ),
    ("KP", ShipmentType.MEDICINE.value): Regulation("KP", "medicine", allowed=False),
    ("KP", ShipmentType.DOCUMENT.value): Regulation("KP", "document", allowed=False),
    ("KP", ShipmentType.GIFT.value): Regulation("KP", "gift", allowed=False),
    ("AE", ShipmentType.GIFT.value): Regulation(
        "AE", "gift", max_declared_value=Decimal("50000"), notes="No alcohol",
    ),
}


class ComplianceLookup:
    """In-process regulation table; swap for a remote lookup behind the same method."""

    def __init__(self, rules: Optional[Dict[Tuple[str, str], Regulation]] = None) -> None:
        self.rules = dict(_RULES if rules is None else rules)

    async def get_regulation(self, country_code: str, shipment_type: str) -> Regulation:
        code = country_code.strip().upper()
        rule = self.rules.get((code, shipment_type))
        if rule is not None:
            return rule
        if shipment_type == ShipmentType.MEDICINE.value:
            return Regulation(code, shipment_type, max_declared_value=MEDICINE_CAP,
                              requires_prescription=True)
        return Regulation(code, shipment_type)

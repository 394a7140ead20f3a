"""
Canonical container schema.

Defines the target schema that manifest headers are mapped into: the field
catalog with value types and known header aliases, the lifecycle stage
codes used for derived events, and the header signatures of manifest
formats we recognise on sight.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple


class FieldType(str, Enum):
    """Coercion rule applied to raw values for a canonical field."""

    TEXT = "text"
    DATE = "date"
    NUMBER = "number"
    INTEGER = "integer"
    STATUS = "status"


@dataclass(frozen=True)
class FieldDefinition:
    """One canonical field of a container record.

    ``aliases`` are header spellings (already normalised) that are seeded
    into the dictionary.  ``stage`` is the lifecycle stage a populated date
    field stands for.
    """

    name: str
    field_type: FieldType
    label: str
    aliases: Tuple[str, ...] = ()
    stage: Optional[str] = None
    required: bool = False


# ---------------------------------------------------------------------------
# Field catalog
# ---------------------------------------------------------------------------

NATURAL_KEY = "containerNumber"

FIELD_CATALOG: Tuple[FieldDefinition, ...] = (
    FieldDefinition(
        "containerNumber", FieldType.TEXT, "Container Number",
        ("container", "container number", "container_number", "containernumber",
         "container #", "container no", "container no.", "cntr", "cntr no",
         "equipment number", "box number"),
        required=True,
    ),
    FieldDefinition(
        "lastFreeDay", FieldType.DATE, "Last Free Day",
        ("lfd", "last free day", "last_free_day", "free time expiry",
         "demurrage start"),
    ),
    FieldDefinition(
        "eta", FieldType.DATE, "Estimated Arrival",
        ("eta", "estimated arrival", "estimated time of arrival", "eta date"),
    ),
    FieldDefinition(
        "ata", FieldType.DATE, "Actual Arrival",
        ("ata", "actual arrival", "arrival actual", "actual arrival date",
         "confirmed destination port arrival (ata)"),
        stage="ARR",
    ),
    FieldDefinition(
        "etd", FieldType.DATE, "Estimated Departure",
        ("etd", "estimated departure", "estimated time of departure"),
    ),
    FieldDefinition(
        "atd", FieldType.DATE, "Actual Departure",
        ("atd", "actual departure", "departure actual", "actual departure date",
         "actual departure (atd)"),
        stage="DEP",
    ),
    FieldDefinition(
        "bookingDate", FieldType.DATE, "Booking Date",
        ("booking date", "booked on", "booking_date"),
        stage="BOOK",
    ),
    FieldDefinition(
        "gateOutDate", FieldType.DATE, "Gate Out Date",
        ("gate out", "gate out date", "gateout date", "actual gateout date",
         "gate-out date"),
        stage="CGO",
    ),
    FieldDefinition(
        "deliveryDate", FieldType.DATE, "Delivery Date",
        ("delivery date", "delivered on", "actual delivery"),
        stage="DEL",
    ),
    FieldDefinition(
        "emptyReturnDate", FieldType.DATE, "Empty Return Date",
        ("empty return", "empty return date", "mt return"),
        stage="RET",
    ),
    FieldDefinition(
        "currentStatus", FieldType.STATUS, "Current Status",
        ("status", "current status", "status code", "milestone"),
    ),
    FieldDefinition(
        "carrier", FieldType.TEXT, "Carrier",
        ("carrier", "carrier code", "scac", "shipping line", "steamship line",
         "carrier code (scac) - shipping line"),
    ),
    FieldDefinition(
        "forwarder", FieldType.TEXT, "Forwarder",
        ("forwarder", "freight forwarder", "nvocc", "forwarding agent"),
    ),
    FieldDefinition(
        "vesselName", FieldType.TEXT, "Vessel",
        ("vessel", "vessel name", "ship name"),
    ),
    FieldDefinition(
        "voyageNumber", FieldType.TEXT, "Voyage",
        ("voyage", "voyage number", "voy", "voyage no"),
    ),
    FieldDefinition(
        "originPort", FieldType.TEXT, "Port of Loading",
        ("pol", "port of loading", "origin port", "export departure port"),
    ),
    FieldDefinition(
        "destinationPort", FieldType.TEXT, "Port of Discharge",
        ("pod", "port of discharge", "destination port", "port of unlading",
         "port of destination"),
    ),
    FieldDefinition(
        "destinationCity", FieldType.TEXT, "Destination City",
        ("destination city", "ship to city", "final destination"),
    ),
    FieldDefinition(
        "shipper", FieldType.TEXT, "Shipper",
        ("shipper", "shipper's full name", "shipper name", "supplier"),
    ),
    FieldDefinition(
        "consignee", FieldType.TEXT, "Consignee",
        ("consignee", "consignee's full name", "consignee's full name (ship to)",
         "ship to", "receiver"),
    ),
    FieldDefinition(
        "businessUnit", FieldType.TEXT, "Business Unit",
        ("business unit", "businessunit", "bu", "division"),
    ),
    FieldDefinition(
        "houseBill", FieldType.TEXT, "House Bill",
        ("hbl", "house bill", "house bill of lading", "shipment / house bill"),
    ),
    FieldDefinition(
        "masterBill", FieldType.TEXT, "Master Bill",
        ("mbl", "master bill", "masterbillnumber", "master bill of lading"),
    ),
    FieldDefinition(
        "containerType", FieldType.TEXT, "Container Type",
        ("container type", "equipment type", "size/type", "cntr type"),
    ),
    FieldDefinition(
        "transportMode", FieldType.TEXT, "Transport Mode",
        ("transport mode", "mode of transport", "mode"),
    ),
    FieldDefinition(
        "shippingType", FieldType.TEXT, "Shipping Type",
        ("shipping type", "load type", "fcl/lcl"),
    ),
    FieldDefinition(
        "sealNumber", FieldType.TEXT, "Seal Number",
        ("seal", "seal number", "seal no"),
    ),
    FieldDefinition(
        "weight", FieldType.NUMBER, "Weight (kg)",
        ("weight", "gross weight", "weight (kg)", "shipment actual weight (kg)"),
    ),
    FieldDefinition(
        "volume", FieldType.NUMBER, "Volume (m3)",
        ("volume", "cbm", "m3", "volume (cbm)", "shipment volume (m3)"),
    ),
    FieldDefinition(
        "pieces", FieldType.INTEGER, "Pieces",
        ("pieces", "pcs", "packages", "shipment pieces (pallets)"),
    ),
    FieldDefinition(
        "freightCost", FieldType.NUMBER, "Freight Cost",
        ("freight cost", "freight charges", "ocean freight"),
    ),
    FieldDefinition(
        "notes", FieldType.TEXT, "Notes",
        ("notes", "remarks", "comments"),
    ),
)

_BY_NAME: Dict[str, FieldDefinition] = {f.name: f for f in FIELD_CATALOG}

CANONICAL_FIELDS: FrozenSet[str] = frozenset(_BY_NAME)


def field_definition(name: str) -> Optional[FieldDefinition]:
    """Return the catalog entry for *name*, or ``None``."""
    return _BY_NAME.get(name)


def field_type_of(name: str) -> FieldType:
    """Coercion type for *name*; unknown fields are treated as text."""
    definition = _BY_NAME.get(name)
    return definition.field_type if definition else FieldType.TEXT


def required_fields() -> List[str]:
    return [f.name for f in FIELD_CATALOG if f.required]


def builtin_synonyms() -> Dict[str, str]:
    """``{alias: canonical field}`` for every alias in the catalog."""
    synonyms: Dict[str, str] = {}
    for definition in FIELD_CATALOG:
        for alias in definition.aliases:
            synonyms[alias] = definition.name
    return synonyms


# ---------------------------------------------------------------------------
# Lifecycle stages
# ---------------------------------------------------------------------------

STATUS_CODES: Dict[str, str] = {
    "BOOK": "Booked",
    "CEP": "Container empty to shipper",
    "CGI": "Gate in at origin",
    "STUF": "Stuffed",
    "LOA": "Loaded on vessel",
    "DEP": "Departed",
    "TS1": "Transhipment arrival",
    "TSD": "Transhipment discharge",
    "TSL": "Transhipment loaded",
    "TS1D": "Transhipment departure",
    "ARR": "Arrived",
    "DIS": "Discharged",
    "INSP": "Inspection",
    "CUS": "Customs hold",
    "REL": "Released",
    "AVL": "Available for pickup",
    "CGO": "Gate out",
    "OFD": "Out for delivery",
    "DEL": "Delivered",
    "STRP": "Stripped",
    "RET": "Empty returned",
}


def date_stage_fields() -> Dict[str, str]:
    """``{canonical date field: stage code}`` for fields that mark a stage."""
    return {f.name: f.stage for f in FIELD_CATALOG if f.stage}


# ---------------------------------------------------------------------------
# Known manifest formats
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class KnownFormat:
    """A manifest layout identified by headers it always carries.

    A signature entry matches any header that *contains* it once both are
    normalised, so ``"actual departure"`` covers ``"Actual Departure (ATD)"``.
    """

    name: str
    signature: Tuple[str, ...] = field(default_factory=tuple)


KNOWN_FORMATS: Tuple[KnownFormat, ...] = (
    KnownFormat(
        "Standard Container Export",
        ("business unit", "containernumber", "shipper's full name",
         "ship to city", "actual departure"),
    ),
)

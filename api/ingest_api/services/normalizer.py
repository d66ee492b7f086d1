"""Turn an extracted crawl payload into typed, timestamped facts.

Parsing is heuristic and intentionally forgiving: each category reads its own
source field and a missing or malformed field simply yields no facts for that
category. Nothing here performs I/O.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

FACT_PROGRAM_TYPE = "program.type"
FACT_COST_BAND = "cost.band"
FACT_COST_NOTES = "cost.notes"
FACT_FLEET_AIRCRAFT = "fleet.aircraft"
FACT_FLEET_COUNT = "fleet.count"
FACT_LOCATION_AIRPORT_CODE = "location.airport_code"
FACT_LOCATION_ADDRESS = "location.address"
FACT_CONTACT_EMAIL = "contact.email"
FACT_CONTACT_PHONE = "contact.phone"

PROGRAM_CODES = ("PPL", "IR", "CPL", "CFI", "CFII", "ME")
COST_BANDS = ("LOW", "MID", "HIGH")

MAX_TEXT_FACT_LENGTH = 500
LOW_BAND_CEILING = 10_000
MID_BAND_CEILING = 20_000

_DOLLAR_RE = re.compile(r"\$[\d,]+")
_LOW_COST_KEYWORDS = ("affordable", "low", "budget")
_HIGH_COST_KEYWORDS = ("premium", "high", "luxury")
_AIRCRAFT_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"(Cessna\s+\d+[A-Z]?)",
        r"(Piper\s+PA-?\d+)",
        r"(Beechcraft\s+\w+)",
        r"(Cirrus\s+SR\d+)",
        r"(Diamond\s+DA\d+)",
        r"(Mooney\s+\w+)",
        r"(Bonanza\s+\w+)",
        r"(Cherokee\s+\w+)",
        r"(Warrior\s+\w+)",
        r"(Archer\s+\w+)",
        r"(Arrow\s+\w+)",
        r"(Skyhawk\s+\w+)",
        r"(Skyhawk)",
        r"(C172)",
        r"(C152)",
    )
)
_FLEET_COUNT_RE = re.compile(r"(\d+)\s*(?:aircraft|plane|airplane)", re.IGNORECASE)
_AIRPORT_CODE_RE = re.compile(r"^([A-Z]{3,4})(?:\s|$|-)")
_EMAIL_RE = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
_PHONE_RE = re.compile(r"(\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4})")
_NON_DIGIT_RE = re.compile(r"\D")


@dataclass(slots=True, frozen=True)
class NormalizedFact:
    fact_key: str
    fact_value: Any
    as_of: datetime


def normalize_snapshot(raw_json: Mapping[str, Any], as_of: datetime) -> list[NormalizedFact]:
    pairs: list[tuple[str, Any]] = []

    programs = raw_json.get("programs")
    if isinstance(programs, list):
        pairs.extend((FACT_PROGRAM_TYPE, code) for code in parse_programs(programs))

    pricing = raw_json.get("pricing")
    if isinstance(pricing, list):
        band, notes = parse_pricing(pricing)
        if band:
            pairs.append((FACT_COST_BAND, band))
        if notes:
            pairs.append((FACT_COST_NOTES, notes))

    fleet = raw_json.get("fleet")
    if isinstance(fleet, list):
        aircraft, count = parse_fleet(fleet)
        if aircraft:
            pairs.append((FACT_FLEET_AIRCRAFT, aircraft))
        if count is not None:
            pairs.append((FACT_FLEET_COUNT, count))

    location = _as_text(raw_json.get("location"))
    if location:
        airport_code, address = parse_location(location)
        if airport_code:
            pairs.append((FACT_LOCATION_AIRPORT_CODE, airport_code))
        elif address:
            pairs.append((FACT_LOCATION_ADDRESS, address))

    contact = _as_text(raw_json.get("contact"))
    if contact:
        email, phone = parse_contact(contact)
        if email:
            pairs.append((FACT_CONTACT_EMAIL, email))
        if phone:
            pairs.append((FACT_CONTACT_PHONE, phone))

    return [NormalizedFact(fact_key=key, fact_value=value, as_of=as_of) for key, value in pairs]


def parse_programs(programs: list[Any]) -> list[str]:
    codes: list[str] = []
    for program in programs:
        if not isinstance(program, str):
            continue
        code = _classify_program(program.strip().lower())
        if code and code not in codes:
            codes.append(code)
    return codes


def _classify_program(label: str) -> str | None:
    if "private" in label or "ppl" in label or label == "pilot license":
        return "PPL"
    if "instrument" in label or "ir" in label or "ifr" in label:
        return "IR"
    if "commercial" in label or "cpl" in label:
        return "CPL"
    if "cfi" in label and "cfii" not in label and "instructor" in label:
        return "CFI"
    if "cfii" in label or ("instrument instructor" in label and "cfi" in label):
        return "CFII"
    if "multi" in label or "me" in label:
        return "ME"
    return None


def parse_pricing(pricing: list[Any]) -> tuple[str | None, str | None]:
    text = "; ".join(item for item in pricing if isinstance(item, str)).strip()
    if not text:
        return None, None

    amounts: list[int] = []
    for token in _DOLLAR_RE.findall(text):
        digits = token.replace("$", "").replace(",", "")
        if digits:
            amounts.append(int(digits))

    if amounts:
        mean = sum(amounts) / len(amounts)
        if mean < LOW_BAND_CEILING:
            band = "LOW"
        elif mean <= MID_BAND_CEILING:
            band = "MID"
        else:
            band = "HIGH"
    else:
        lowered = text.lower()
        if any(keyword in lowered for keyword in _LOW_COST_KEYWORDS):
            band = "LOW"
        elif any(keyword in lowered for keyword in _HIGH_COST_KEYWORDS):
            band = "HIGH"
        else:
            band = "MID"

    return band, text[:MAX_TEXT_FACT_LENGTH]


def parse_fleet(fleet: list[Any]) -> tuple[list[str], int | None]:
    aircraft: list[str] = []
    total: int | None = None
    for item in fleet:
        if not isinstance(item, str):
            continue

        for pattern in _AIRCRAFT_PATTERNS:
            match = pattern.search(item)
            if match:
                name = match.group(1).strip()
                if name not in aircraft:
                    aircraft.append(name)

        for match in _FLEET_COUNT_RE.finditer(item):
            total = (total or 0) + int(match.group(1))

    return aircraft, total


def parse_location(location: str) -> tuple[str | None, str | None]:
    trimmed = location.strip()
    match = _AIRPORT_CODE_RE.match(trimmed)
    if match:
        return match.group(1), None
    return None, trimmed[:MAX_TEXT_FACT_LENGTH]


def parse_contact(contact: str) -> tuple[str | None, str | None]:
    trimmed = contact.strip()

    email_match = _EMAIL_RE.search(trimmed)
    email = email_match.group(0) if email_match else None

    phone: str | None = None
    phone_match = _PHONE_RE.search(trimmed)
    if phone_match:
        digits = _NON_DIGIT_RE.sub("", phone_match.group(1))
        if len(digits) == 10:
            phone = digits

    return email, phone


def _as_text(value: Any) -> str | None:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None

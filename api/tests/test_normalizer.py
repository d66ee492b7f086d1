from __future__ import annotations

from datetime import datetime, timezone

import pytest

from ingest_api.services.normalizer import (
    normalize_snapshot,
    parse_contact,
    parse_fleet,
    parse_location,
    parse_pricing,
    parse_programs,
)

AS_OF = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _facts(raw: dict) -> list[tuple[str, object]]:
    return [(fact.fact_key, fact.fact_value) for fact in normalize_snapshot(raw, AS_OF)]


@pytest.mark.parametrize(
    ("pricing", "band"),
    [
        (["$8,000", "$9,000"], "LOW"),
        (["$15,000"], "MID"),
        (["$10,000"], "MID"),
        (["$20,000"], "MID"),
        (["$25,000", "$30,000"], "HIGH"),
        (["premium training"], "HIGH"),
        (["affordable rates"], "LOW"),
        (["call for a quote"], "MID"),
    ],
)
def test_pricing_bands(pricing: list[str], band: str) -> None:
    assert parse_pricing(pricing)[0] == band


def test_pricing_notes_join_fragments_and_truncate() -> None:
    band, notes = parse_pricing(["$150/hour", "$15,000 total"])
    assert band == "LOW"
    assert notes == "$150/hour; $15,000 total"

    _, long_notes = parse_pricing(["x" * 800])
    assert long_notes is not None
    assert len(long_notes) == 500


def test_empty_pricing_yields_no_facts() -> None:
    assert parse_pricing([]) == (None, None)
    assert parse_pricing(["   "]) == (None, None)
    assert _facts({"pricing": []}) == []


def test_programs_map_to_codes_in_first_seen_order() -> None:
    assert parse_programs(["Private Pilot License", "Instrument Rating"]) == ["PPL", "IR"]
    assert parse_programs(["Commercial Pilot", "Private Pilot", "Multi-Engine"]) == ["CPL", "PPL", "ME"]
    assert parse_programs(["Private Pilot", "PPL ground school"]) == ["PPL"]
    assert parse_programs(["Discovery flight", 42]) == []


def test_fleet_matches_aircraft_and_sums_counts() -> None:
    aircraft, count = parse_fleet(["2 aircraft: Cessna 172", "Piper PA-28", "3 planes on the line"])

    assert aircraft == ["Cessna 172", "Piper PA-28"]
    assert count == 5


def test_fleet_without_counts_omits_count_fact() -> None:
    aircraft, count = parse_fleet(["Cirrus SR22", "Cirrus SR22"])

    assert aircraft == ["Cirrus SR22"]
    assert count is None
    assert ("fleet.count", None) not in _facts({"fleet": ["Cirrus SR22"]})


def test_location_emits_airport_code_or_address() -> None:
    assert parse_location("KJFK Main Terminal") == ("KJFK", None)
    assert parse_location("KORD-Chicago") == ("KORD", None)
    assert parse_location("123 Main St, Springfield") == (None, "123 Main St, Springfield")

    assert _facts({"location": "KJFK Main Terminal"}) == [("location.airport_code", "KJFK")]
    assert _facts({"location": "123 Main St, Springfield"}) == [("location.address", "123 Main St, Springfield")]


def test_contact_extracts_email_and_ten_digit_phone() -> None:
    email, phone = parse_contact("Email fly@example-flight.com or call (555) 123-4567")

    assert email == "fly@example-flight.com"
    assert phone == "5551234567"


def test_contact_phone_with_wrong_digit_count_is_dropped() -> None:
    assert parse_contact("call 123-4567") == (None, None)


def test_missing_or_malformed_fields_are_ignored() -> None:
    raw = {"programs": "Private Pilot", "pricing": None, "fleet": {"a": 1}, "location": "   ", "contact": 5}
    assert _facts(raw) == []


def test_full_payload_produces_facts_sharing_as_of() -> None:
    raw = {
        "programs": ["Private Pilot", "CFII"],
        "pricing": ["$12,000 package"],
        "fleet": ["4 aircraft including Cessna 152"],
        "location": "KPAO",
        "contact": "info@paoflight.com 650-555-0100",
    }

    facts = normalize_snapshot(raw, AS_OF)

    assert [(fact.fact_key, fact.fact_value) for fact in facts] == [
        ("program.type", "PPL"),
        ("program.type", "CFII"),
        ("cost.band", "MID"),
        ("cost.notes", "$12,000 package"),
        ("fleet.aircraft", ["Cessna 152"]),
        ("fleet.count", 4),
        ("location.airport_code", "KPAO"),
        ("contact.email", "info@paoflight.com"),
        ("contact.phone", "6505550100"),
    ]
    assert all(fact.as_of == AS_OF for fact in facts)
    assert normalize_snapshot(raw, AS_OF) == facts

"""Tests for the payment receipt candidate parser."""

from __future__ import annotations

from decimal import Decimal

import pytest

from payproof.models.receipt import FieldKind, RawExtraction
from payproof.ocr.parser import CandidateParser, parse, parse_amount
from payproof.ocr.reconciler import select_winners
from tests.utils import GCASH_TEXT


def _raw(text: str) -> RawExtraction:
    return RawExtraction(raw_text=text, source="tesseract", confidence=0.9)


def _winners(text: str):
    raw = _raw(text)
    return select_winners(parse(raw), raw)


def test_gcash_receipt_fills_every_field():
    result = _winners(GCASH_TEXT)

    assert result.status == "ok"
    assert result.value(FieldKind.AMOUNT) == "1250.00"
    assert result.value(FieldKind.REFERENCE_NUMBER) == "00123456789"
    assert result.value(FieldKind.DATE) == "2026-03-20"
    assert result.value(FieldKind.TIME) == "14:05"
    assert result.value(FieldKind.BANK) == "GCash"
    for kind in FieldKind:
        assert result.winner(kind).confidence >= 0.5
    assert result.winner(FieldKind.DATE).pattern == "datetime.iso"
    assert result.winner(FieldKind.AMOUNT).pattern == "amount.labeled"
    assert result.manual_entry is False


@pytest.mark.parametrize("text", ["", "   \n\n  "])
def test_blank_text_yields_no_candidates(text):
    raw = _raw(text)
    candidates = parse(raw)
    result = select_winners(candidates, raw)

    assert candidates == []
    assert all(result.winner(kind) is None for kind in FieldKind)
    assert result.status == "empty"
    assert result.manual_entry is True


def test_combined_timestamp_beats_bare_date():
    raw = _raw("Paid on 2026-03-20 14:05\nPrinted 2026-03-19")
    candidates = parse(raw)
    dates = {c.value: c for c in candidates if c.kind is FieldKind.DATE}

    assert dates["2026-03-20"].pattern == "datetime.iso"
    assert dates["2026-03-19"].pattern == "date.iso"
    assert dates["2026-03-20"].confidence > dates["2026-03-19"].confidence

    result = select_winners(candidates, raw)
    assert result.value(FieldKind.DATE) == "2026-03-20"
    assert result.value(FieldKind.TIME) == "14:05"


def test_combined_timestamp_beats_bare_time():
    raw = _raw("Paid 2026-03-20 14:05\nPrinted 09:15 PM")
    candidates = parse(raw)
    times = {c.value: c for c in candidates if c.kind is FieldKind.TIME}

    assert times["14:05"].pattern == "datetime.iso"
    assert times["21:15"].pattern == "time.meridiem"
    assert times["21:15"].confidence < times["14:05"].confidence
    assert select_winners(candidates, raw).value(FieldKind.TIME) == "14:05"


def test_month_name_date_pairs_with_following_time():
    result = _winners("Mar 20, 2026 2:05 PM")

    assert result.value(FieldKind.DATE) == "2026-03-20"
    assert result.value(FieldKind.TIME) == "14:05"
    assert result.winner(FieldKind.DATE).pattern == "datetime.adjacent"


def test_noisy_month_day_year_is_still_a_date():
    candidates = parse(_raw("Sep 26 Date and 2025"))
    dates = [c for c in candidates if c.kind is FieldKind.DATE]

    assert [c.value for c in dates] == ["2025-09-26"]
    assert dates[0].pattern == "date.noisy"


def test_twelve_hour_clock_converts_to_24h():
    candidates = parse(_raw("Time: 12:30 AM"))
    times = [c for c in candidates if c.kind is FieldKind.TIME]

    assert [c.value for c in times] == ["00:30"]
    assert times[0].pattern == "time.meridiem"


def test_invalid_calendar_date_is_skipped():
    candidates = parse(_raw("Date 2026-02-30"))
    assert not [c for c in candidates if c.kind is FieldKind.DATE]


def test_total_outranks_earlier_labeled_amount():
    result = _winners("Amount 1,000.00\nService fee 15.00\nTotal 1,015.00")

    assert result.value(FieldKind.AMOUNT) == "1015.00"


def test_balance_amount_is_penalized():
    raw = _raw("Balance 9,999.00\nAmount sent 250.00")
    candidates = [c for c in parse(raw) if c.kind is FieldKind.AMOUNT]
    by_value = {c.value: c for c in candidates}

    assert by_value["9999.00"].confidence < 0.5
    assert select_winners(candidates, raw).value(FieldKind.AMOUNT) == "250.00"


def test_amount_bounds_are_configurable():
    parser = CandidateParser(amount_min=Decimal("100"), amount_max=Decimal("1000"))
    amounts = [
        c.value
        for c in parser.parse(_raw("Amount: PHP 50.00\nTotal: PHP 5,000.00\nPaid PHP 750.00"))
        if c.kind is FieldKind.AMOUNT
    ]

    assert amounts == ["750.00"]


def test_grouped_reference_is_joined_and_phone_number_demoted():
    result = _winners("Sent to 09171234567\nRef No. 1234 567 890123")

    assert result.value(FieldKind.REFERENCE_NUMBER) == "1234567890123"
    assert result.winner(FieldKind.REFERENCE_NUMBER).pattern == "reference.labeled"
    assert result.value(FieldKind.AMOUNT) is None


def test_reference_number_is_not_mistaken_for_amount():
    candidates = parse(_raw("Ref: 123456"))

    assert [c.value for c in candidates if c.kind is FieldKind.REFERENCE_NUMBER] == ["123456"]
    assert not [c for c in candidates if c.kind is FieldKind.AMOUNT]


def test_sender_bank_beats_recipient_bank():
    result = _winners("Transfer from BPI Savings to BDO Unibank\nAmount PHP 500.00")
    banks = {
        c.pattern: c.value for c in result.candidates if c.kind is FieldKind.BANK
    }

    assert result.value(FieldKind.BANK) == "BPI"
    assert banks["bank.from_context"] == "BPI"
    assert banks["bank.to_context"] == "BDO"


def test_misspelled_bank_produces_low_confidence_fuzzy_candidate():
    candidates = parse(_raw("Paid via Metrobnak"))
    fuzzy = [c for c in candidates if c.pattern == "bank.fuzzy"]

    assert [c.value for c in fuzzy] == ["Metrobank"]
    assert fuzzy[0].confidence < 0.55


def test_candidate_spans_index_normalized_text():
    raw = _raw("Amount:   ₱1,250.00")
    amount = next(c for c in parse(raw) if c.kind is FieldKind.AMOUNT)

    assert amount.value == "1250.00"
    assert amount.span is not None


@pytest.mark.parametrize(
    ("token", "expected"),
    [
        ("PHP 1,250.5", Decimal("1250.50")),
        ("P300", Decimal("300.00")),
        ("₱ 12,000", Decimal("12000.00")),
        ("abc", None),
        ("", None),
    ],
)
def test_parse_amount(token, expected):
    assert parse_amount(token) == expected

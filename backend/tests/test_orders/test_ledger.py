"""
Tests for the status history ledger, display formatting and timestamp helpers.
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from pharmadelivery.core.timeutils import (
    parse_timestamp,
    previous_local_day_bounds,
    seconds_until_local_hour,
)
from pharmadelivery.services.orders.enums import OrderStatus
from pharmadelivery.services.orders.formatting import format_phone, format_price, short_name
from pharmadelivery.services.orders.ledger import (
    StatusHistoryEntry,
    append_entry,
    parse_status_history,
)

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class TestStatusHistoryEntry:
    """Tests for ledger entry serialization."""

    def test_optional_fields_omitted(self) -> None:
        document = StatusHistoryEntry(status="Pendente", timestamp=T0).to_document()

        assert document == {"status": "Pendente", "timestamp": T0.isoformat()}

    def test_round_trip_keeps_reason_and_actor(self) -> None:
        entry = StatusHistoryEntry(
            status="Cancelado", timestamp=T0, reason="Negligenciado", actor="system"
        )

        assert StatusHistoryEntry.from_document(entry.to_document()) == entry

    def test_legacy_status_kept_as_text(self) -> None:
        entry = StatusHistoryEntry.from_document({"status": "Aguardando", "timestamp": None})

        assert entry.status == "Aguardando"
        assert entry.order_status is None
        assert entry.timestamp is None

    def test_enum_status_normalized(self) -> None:
        entry = StatusHistoryEntry.from_document(
            {"status": OrderStatus.DELIVERED, "timestamp": T0}
        )

        assert entry.status == "Entregue"
        assert entry.order_status == OrderStatus.DELIVERED


class TestLedgerOperations:
    """Tests for parsing and appending."""

    def test_append_returns_new_list(self) -> None:
        history = [{"status": "Pendente", "timestamp": T0.isoformat()}]

        updated = append_entry(history, StatusHistoryEntry(status="Em Preparação", timestamp=T0))

        assert len(history) == 1
        assert len(updated) == 2
        assert updated[0] == history[0]
        assert updated[-1]["status"] == "Em Preparação"

    def test_append_to_empty(self) -> None:
        updated = append_entry(None, StatusHistoryEntry(status="Pendente", timestamp=T0))

        assert updated == [{"status": "Pendente", "timestamp": T0.isoformat()}]

    def test_parse_preserves_order_and_skips_non_objects(self) -> None:
        history = [
            {"status": "Entregue", "timestamp": "2024-05-01T12:30:00Z"},
            42,
            {"status": "Pendente", "timestamp": 1714564800000},
        ]

        entries = parse_status_history(history)

        assert [entry.status for entry in entries] == ["Entregue", "Pendente"]
        assert entries[0].timestamp == datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)
        assert entries[1].timestamp == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class TestFormatting:
    """Tests for Brazilian display formats."""

    @pytest.mark.parametrize(
        "amount,expected",
        [
            (Decimal("12.5"), "R$ 12,50"),
            (Decimal("1234.5"), "R$ 1.234,50"),
            (0, "R$ 0,00"),
            (None, None),
        ],
    )
    def test_format_price(self, amount, expected) -> None:
        assert format_price(amount) == expected

    def test_format_phone_eleven_digits(self) -> None:
        assert format_phone("11987654321") == "(11) 98765-4321"
        assert format_phone("(11) 98765 4321") == "(11) 98765-4321"

    def test_format_phone_other_lengths_untouched(self) -> None:
        assert format_phone(" 3333-4444 ") == "3333-4444"
        assert format_phone(None) is None

    def test_short_name(self) -> None:
        assert short_name("João Carlos da Silva") == "João Carlos"
        assert short_name("Ana") == "Ana"
        assert short_name(None) is None


class TestTimeUtils:
    """Tests for timestamp normalization and business-day bounds."""

    @pytest.mark.parametrize("value", [None, "", "yesterday", True, object()])
    def test_unparseable_timestamps(self, value) -> None:
        assert parse_timestamp(value) is None

    def test_naive_datetime_treated_as_utc(self) -> None:
        assert parse_timestamp(datetime(2024, 5, 1, 12, 0)) == T0

    def test_epoch_seconds(self) -> None:
        assert parse_timestamp(1714564800) == T0

    def test_previous_local_day_bounds(self) -> None:
        # 01:30 in Sao Paulo (UTC-3) on May 2nd
        now = datetime(2024, 5, 2, 4, 30, tzinfo=timezone.utc)

        start, end = previous_local_day_bounds("America/Sao_Paulo", now)

        assert start == datetime(2024, 5, 1, 3, 0, tzinfo=timezone.utc)
        assert end == datetime(2024, 5, 2, 3, 0, tzinfo=timezone.utc)

    def test_seconds_until_local_hour(self) -> None:
        # 01:00 local, next 02:00 is one hour away
        now = datetime(2024, 5, 2, 4, 0, tzinfo=timezone.utc)

        assert seconds_until_local_hour("America/Sao_Paulo", 2, now) == 3600.0

    def test_seconds_until_local_hour_wraps_to_tomorrow(self) -> None:
        now = datetime(2024, 5, 2, 5, 0, tzinfo=timezone.utc)

        assert seconds_until_local_hour("America/Sao_Paulo", 2, now) == 24 * 3600.0

"""
Tests for domain models and search parameter validation.
"""

from datetime import datetime, timedelta, timezone

import pytest

from core.error_handling import InvalidQueryError
from core.models import KeyValue, TraceID, TraceQueryParameters, format_span_id, span_id_from_hex

START = datetime(2024, 1, 1, tzinfo=timezone.utc)


class TestTraceID:

    def test_round_trips_full_width_hex(self):
        text = "00000000000000ff0000000000000001"
        assert str(TraceID.from_hex(text)) == text

    def test_short_hex_fills_low_half(self):
        assert TraceID.from_hex("abc") == TraceID(high=0, low=0xABC)

    def test_high_half(self):
        assert TraceID.from_hex("1" + "0" * 16) == TraceID(high=1, low=0)

    @pytest.mark.parametrize("text", ["", "xyz", "1" * 33])
    def test_rejects_invalid_hex(self, text):
        with pytest.raises(ValueError):
            TraceID.from_hex(text)

    def test_rejects_out_of_range_halves(self):
        with pytest.raises(ValueError):
            TraceID(high=-1, low=0)

    def test_hashable_for_grouping(self):
        assert len({TraceID.from_hex("a"), TraceID(high=0, low=10)}) == 1


def test_span_id_helpers():
    assert span_id_from_hex("00ff") == 255
    assert format_span_id(255) == "00000000000000ff"
    with pytest.raises(ValueError):
        span_id_from_hex("1" * 17)


@pytest.mark.parametrize("value,expected", [
    ("GET", "string"),
    (True, "bool"),
    (200, "int64"),
    (0.5, "float64"),
])
def test_key_value_types(value, expected):
    assert KeyValue(key="k", value=value).value_type == expected


class TestTraceQueryParameters:

    def test_valid_parameters(self):
        TraceQueryParameters(service_name="frontend", start_time_min=START).validate_query()

    def test_service_name_required(self):
        with pytest.raises(InvalidQueryError):
            TraceQueryParameters(operation_name="GET /", start_time_min=START).validate_query()

    def test_start_time_required(self):
        with pytest.raises(InvalidQueryError):
            TraceQueryParameters(service_name="frontend").validate_query()

    def test_start_after_end(self):
        params = TraceQueryParameters(
            service_name="frontend", start_time_min=START, start_time_max=START - timedelta(seconds=1)
        )
        with pytest.raises(InvalidQueryError):
            params.validate_query()

    def test_naive_and_aware_times_compare(self):
        params = TraceQueryParameters(
            service_name="frontend", start_time_min=START, start_time_max=datetime(2024, 1, 2)
        )
        params.validate_query()

    def test_duration_min_above_max(self):
        params = TraceQueryParameters(
            service_name="frontend",
            start_time_min=START,
            duration_min=timedelta(seconds=2),
            duration_max=timedelta(seconds=1),
        )
        with pytest.raises(InvalidQueryError):
            params.validate_query()

    def test_negative_limit(self):
        with pytest.raises(InvalidQueryError):
            TraceQueryParameters(service_name="frontend", start_time_min=START, num_traces=-1).validate_query()

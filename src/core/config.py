"""Schema names and defaults shared by the query builder and decoder."""

# Measurements
DEFAULT_SPAN_MEASUREMENT = "span"
DEFAULT_LOG_MEASUREMENT = "logs"

# Tag columns
TRACE_ID_KEY = "trace_id"
SERVICE_NAME_KEY = "service_name"
OPERATION_NAME_KEY = "operation_name"

# Field columns
SPAN_ID_KEY = "span_id"
DURATION_KEY = "duration"
FLAGS_KEY = "flags"
REFERENCES_KEY = "references"

# Engine columns
TIME_COLUMN = "_time"
MEASUREMENT_COLUMN = "_measurement"
FIELD_COLUMN = "_field"
VALUE_COLUMN = "_value"
START_COLUMN = "_start"
STOP_COLUMN = "_stop"

# Result and table number columns the response carries on every row
FRAMING_COLUMNS = frozenset({"result", "table"})

# Columns never surfaced as span tags or log fields
RESERVED_COLUMNS = frozenset({
    TIME_COLUMN,
    MEASUREMENT_COLUMN,
    FIELD_COLUMN,
    VALUE_COLUMN,
    START_COLUMN,
    STOP_COLUMN,
    TRACE_ID_KEY,
    SERVICE_NAME_KEY,
    OPERATION_NAME_KEY,
    SPAN_ID_KEY,
    DURATION_KEY,
    FLAGS_KEY,
    REFERENCES_KEY,
})

# Reference encoding: "<ref_type>:<trace_id>:<span_id>" joined by ","
REFERENCE_SEPARATOR = ","
REFERENCE_PART_SEPARATOR = ":"

# Output dialect annotations the decoder relies on
DIALECT_ANNOTATIONS = ["group", "datatype", "default"]

DEFAULT_LOOKBACK_HOURS = 48
DEFAULT_QUERY_LIMIT = 20
REQUEST_TIMEOUT_SECONDS = 30.0

"""Domain model, query building and result decoding for the trace reader."""

"""Trace reader service: query execution, reader facade and HTTP API."""

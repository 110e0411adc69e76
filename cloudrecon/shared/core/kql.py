"""
Helpers for building Log Analytics (KQL) and ARM OData queries from fixed templates.

Values that come from resources or user input are only ever inserted through
these literal encoders; time windows travel as the ``timespan`` parameter.
"""

from __future__ import annotations


def kql_string(value: str) -> str:
    """Encode ``value`` as a single-quoted KQL string literal."""
    escaped = (
        str(value)
        .replace("\\", "\\\\")
        .replace("'", "\\'")
        .replace("\n", "\\n")
        .replace("\r", "\\r")
    )
    return f"'{escaped}'"


def odata_string(value: str) -> str:
    """Encode ``value`` as an OData string literal (quotes doubled)."""
    return "'" + str(value).replace("'", "''") + "'"

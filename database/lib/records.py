"""Conversion of store rows into JSON-safe dicts."""
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Mapping

def to_json_value(value: Any) -> Any:
    """Convert a single column value; decimals become strings to keep exact amounts."""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value

def to_json_record(row: Mapping[str, Any]) -> Dict[str, Any]:
    """Convert a row mapping into a dict of JSON-safe values."""
    return {key: to_json_value(value) for key, value in row.items()}

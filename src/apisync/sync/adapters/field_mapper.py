"""Field mapper adapter for translating between local entities and remote records.

This adapter implements IFieldMapper from a mapping's field_mappings list.
Fields flow one way or both depending on each FieldMapping's direction.
"""

import re
from datetime import datetime, timezone
from typing import Any, Optional

from ..domain.entities import Entity, Mapping
from ..domain.ports import IFieldMapper

# Legacy OData JSON dates: /Date(1700000000000)/ or /Date(1700000000000+0100)/
_ODATA_DATE = re.compile(r"^/Date\((-?\d+)([+-]\d{4})?\)/$")


class MappingFieldMapper(IFieldMapper):
    """Maps entity fields to remote fields (and back) as configured on the mapping.

    This class handles:
    - Direction filtering (push-only fields never pulled, and vice versa)
    - Remote key extraction
    - Trigger-date parsing (ISO 8601 with Z suffix, legacy /Date(ms)/, epoch numbers)
    """

    def to_remote(self, entity: Entity, mapping: Mapping) -> dict[str, Any]:
        """Outgoing remote field values for an entity.

        Local fields missing from the entity are left out rather than sent as null.
        """
        params = {}
        for field_mapping in mapping.field_mappings:
            if not field_mapping.pushes:
                continue
            if field_mapping.local_field in entity.fields:
                params[field_mapping.remote_field] = entity.fields[field_mapping.local_field]
        return params

    def to_local(self, record: dict[str, Any], mapping: Mapping) -> dict[str, Any]:
        values = {}
        for field_mapping in mapping.field_mappings:
            if not field_mapping.pulls:
                continue
            if field_mapping.remote_field in record:
                values[field_mapping.local_field] = record[field_mapping.remote_field]
        return values

    def remote_id(self, record: dict[str, Any], mapping: Mapping) -> Optional[str]:
        value = record.get(mapping.key_field)
        if value is None or value == "":
            return None
        return str(value)

    def remote_updated(self, record: dict[str, Any], mapping: Mapping) -> Optional[float]:
        if not mapping.pull_trigger_date:
            return None
        return self._parse_timestamp(record.get(mapping.pull_trigger_date))

    @staticmethod
    def _parse_timestamp(value: Any) -> Optional[float]:
        """Parse a remote timestamp value to unix time.

        Args:
            value: ISO 8601 string (may end with 'Z'), legacy OData date
                string, datetime, or epoch seconds

        Returns:
            Unix time, or None if the value is empty or unparseable
        """
        if value is None or value == "":
            return None

        if isinstance(value, bool):
            return None

        if isinstance(value, (int, float)):
            return float(value)

        if isinstance(value, datetime):
            if value.tzinfo is None:
                value = value.replace(tzinfo=timezone.utc)
            return value.timestamp()

        if not isinstance(value, str):
            return None

        match = _ODATA_DATE.match(value)
        if match:
            return int(match.group(1)) / 1000.0

        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.timestamp()

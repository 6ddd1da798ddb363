"""OData transport adapter.

This adapter implements IRemoteTransport and wraps ApiSyncClient to
address remote records by object type and key:

    Products           collection (query, create)
    Products('A-17')   single record with a string key
    Products(42)       single record with a numeric key
"""

import logging
from typing import TYPE_CHECKING, Any, Optional
from urllib.parse import quote

from ...api.exceptions import APIError, NotFoundError
from ..domain.ports import IRemoteTransport
from ..domain.query import FinalizedQuery

if TYPE_CHECKING:
    from ...api.client import ApiSyncClient, PaginationConfig

logger = logging.getLogger(__name__)


def entity_path(object_type: str, remote_id: Any) -> str:
    """Path of one record, quoting non-numeric keys the OData way."""
    key = str(remote_id)
    if key.isdigit():
        return f"/{object_type}({key})"
    escaped = quote(key.replace("'", "''"), safe="")
    return f"/{object_type}('{escaped}')"


class ODataTransport(IRemoteTransport):
    """Remote record operations over an OData service."""

    def __init__(
        self,
        client: "ApiSyncClient",
        key_fields: Optional[dict[str, str]] = None,
        default_key_field: str = "Id",
        pagination_config: "PaginationConfig | None" = None,
    ):
        """Initialize the transport.

        Args:
            client: Open ApiSyncClient
            key_fields: Remote key field per object type, from the mappings
            default_key_field: Key field for object types not listed
            pagination_config: Optional pagination config for queries
        """
        self.client = client
        self.key_fields = dict(key_fields or {})
        self.default_key_field = default_key_field
        self.pagination_config = pagination_config

    def key_field(self, object_type: str) -> str:
        return self.key_fields.get(object_type, self.default_key_field)

    async def create(self, object_type: str, fields: dict[str, Any]) -> str:
        record = await self.client.post(f"/{object_type}", json_body=fields)
        key_field = self.key_field(object_type)
        remote_id = record.get(key_field) if record else None
        if remote_id is None or remote_id == "":
            raise APIError(
                f"Create on {object_type} returned no '{key_field}' value",
                status_code=200,
                endpoint=f"/{object_type}",
                method="POST",
            )
        logger.debug(f"Created {object_type} {remote_id}")
        return str(remote_id)

    async def update(self, object_type: str, remote_id: str, fields: dict[str, Any]) -> None:
        await self.client.patch(entity_path(object_type, remote_id), json_body=fields)

    async def delete(self, object_type: str, remote_id: str) -> None:
        try:
            await self.client.delete(entity_path(object_type, remote_id))
        except NotFoundError:
            # Already gone on the remote side
            logger.info(f"{object_type} {remote_id} already deleted remotely")

    async def read(self, object_type: str, remote_id: str) -> Optional[dict[str, Any]]:
        try:
            return await self.client.get(entity_path(object_type, remote_id))
        except NotFoundError:
            return None

    async def query(self, query: FinalizedQuery) -> list[dict[str, Any]]:
        return await self.client.fetch_all(
            f"/{query.object_type}",
            config=self.pagination_config,
            params=query.to_params(),
        )

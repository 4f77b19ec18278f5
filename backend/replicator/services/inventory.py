"""Which source collections look out of date on the target."""

from __future__ import annotations

import asyncio

from replicator.schemas.sync import CollectionInventory, InventoryResponse
from replicator.services.store import CollectionInfo, StoreConnector, connect_pair


def _needs_sync(source: CollectionInfo, target: CollectionInfo | None) -> bool:
    if target is None or target.count != source.count:
        return True
    if source.last_modified and target.last_modified:
        return source.last_modified > target.last_modified
    return False


async def collection_inventory(
    connector: StoreConnector, source_url: str, target_url: str,
) -> InventoryResponse:
    source, target = await connect_pair(connector, source_url, target_url)
    try:
        source_infos, target_infos = await asyncio.gather(
            source.list_collections(), target.list_collections(),
        )
    finally:
        await source.close()
        await target.close()

    by_name = {info.name: info for info in target_infos}
    source_names = {info.name for info in source_infos}

    return InventoryResponse(
        source_collections=[
            CollectionInventory(
                name=info.name,
                count=info.count,
                target_count=by_name[info.name].count if info.name in by_name else 0,
                last_modified=info.last_modified,
                needs_sync=_needs_sync(info, by_name.get(info.name)),
            )
            for info in source_infos
        ],
        target_collections=[
            CollectionInventory(
                name=info.name, count=info.count, target_count=info.count,
                last_modified=info.last_modified,
            )
            for info in target_infos
        ],
        unique_target_collections=[
            CollectionInventory(
                name=info.name, count=0, target_count=info.count, only_in_target=True,
            )
            for info in target_infos
            if info.name not in source_names
        ],
    )

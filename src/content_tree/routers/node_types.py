from __future__ import annotations

from fastapi import APIRouter, Depends, Response, status
from sqlmodel.ext.asyncio.session import AsyncSession

from content_tree.db import get_session
from content_tree.deps import get_actor_id, get_node_type_service, get_tree_query
from content_tree.schemas import (
    NodeList,
    NodeTypeCreateRequest,
    NodeTypeOut,
    NodeTypePatchRequest,
    TypeUsageOut,
    node_list,
)
from content_tree.services.node_types_service import NodeTypeService
from content_tree.services.tree_query import TreeQuery

router = APIRouter(prefix="/tree/node-types", tags=["tree-node-types"])


@router.get("", response_model=list[NodeTypeOut])
async def list_node_types(
    service: NodeTypeService = Depends(get_node_type_service),
    session: AsyncSession = Depends(get_session),
) -> list[NodeTypeOut]:
    return [NodeTypeOut.from_model(t) for t in await service.list_node_types(session)]


@router.post("", response_model=NodeTypeOut, status_code=status.HTTP_201_CREATED)
async def create_node_type(
    payload: NodeTypeCreateRequest,
    actor_id: str = Depends(get_actor_id),
    service: NodeTypeService = Depends(get_node_type_service),
    session: AsyncSession = Depends(get_session),
) -> NodeTypeOut:
    node_type = await service.create_node_type(
        session,
        actor_id=actor_id,
        name=payload.name,
        description=payload.description,
        max_children=payload.max_children,
        max_depth=payload.max_depth,
        allowed_parent_type_ids=payload.allowed_parent_type_ids,
        is_system=payload.is_system,
    )
    return NodeTypeOut.from_model(node_type)


@router.get("/{type_id}", response_model=NodeTypeOut)
async def get_node_type(
    type_id: int,
    service: NodeTypeService = Depends(get_node_type_service),
    session: AsyncSession = Depends(get_session),
) -> NodeTypeOut:
    return NodeTypeOut.from_model(await service.get_node_type(session, type_id))


@router.patch("/{type_id}", response_model=NodeTypeOut)
async def patch_node_type(
    type_id: int,
    payload: NodeTypePatchRequest,
    actor_id: str = Depends(get_actor_id),
    service: NodeTypeService = Depends(get_node_type_service),
    session: AsyncSession = Depends(get_session),
) -> NodeTypeOut:
    fields = {k: getattr(payload, k) for k in sorted(payload.model_fields_set)}
    node_type = await service.update_node_type(
        session, actor_id=actor_id, type_id=type_id, fields=fields
    )
    return NodeTypeOut.from_model(node_type)


@router.delete("/{type_id}")
async def delete_node_type(
    type_id: int,
    actor_id: str = Depends(get_actor_id),
    service: NodeTypeService = Depends(get_node_type_service),
    session: AsyncSession = Depends(get_session),
):
    await service.delete_node_type(session, actor_id=actor_id, type_id=type_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{type_id}/usage", response_model=TypeUsageOut)
async def get_node_type_usage(
    type_id: int,
    service: NodeTypeService = Depends(get_node_type_service),
    session: AsyncSession = Depends(get_session),
) -> TypeUsageOut:
    usage = await service.get_type_usage(session, type_id)
    return TypeUsageOut(
        type_id=usage.type_id, total_nodes=usage.total_nodes, active_nodes=usage.active_nodes
    )


@router.get("/{type_id}/nodes", response_model=NodeList)
async def list_nodes_of_type(
    type_id: int,
    service: NodeTypeService = Depends(get_node_type_service),
    query: TreeQuery = Depends(get_tree_query),
    session: AsyncSession = Depends(get_session),
) -> NodeList:
    await service.get_node_type(session, type_id)
    return node_list(await query.get_by_type(session, type_id))

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Path, Query, status
from sqlmodel.ext.asyncio.session import AsyncSession

from content_tree.db import get_session
from content_tree.deps import get_actor_id, get_tree_query, get_tree_service
from content_tree.schemas import (
    NodeCreateRequest,
    NodeList,
    NodeMoveRequest,
    NodeOut,
    NodePatchRequest,
    ReorderRequest,
    StatisticsOut,
    SubtreeOut,
    node_list,
)
from content_tree.services.tree_query import TreeQuery
from content_tree.services.tree_service import TreeService

router = APIRouter(prefix="/tree/nodes", tags=["tree"])


# Static paths are registered before /{node_id} so they win the match.
@router.get("/roots", response_model=NodeList)
async def list_roots(
    query: TreeQuery = Depends(get_tree_query),
    session: AsyncSession = Depends(get_session),
) -> NodeList:
    return node_list(await query.get_roots(session))


@router.put("/roots/reorder", response_model=NodeList)
async def reorder_roots(
    payload: ReorderRequest,
    actor_id: str = Depends(get_actor_id),
    service: TreeService = Depends(get_tree_service),
    session: AsyncSession = Depends(get_session),
) -> NodeList:
    children = await service.reorder_children(
        session, actor_id=actor_id, parent_id=None, order_map=payload.order
    )
    return node_list(children)


@router.get("/forest", response_model=list[SubtreeOut])
async def get_forest(
    max_depth: Annotated[int | None, Query(ge=0)] = None,
    active_only: bool = False,
    query: TreeQuery = Depends(get_tree_query),
    session: AsyncSession = Depends(get_session),
) -> list[SubtreeOut]:
    forest = await query.get_forest(session, max_depth, active_only=active_only)
    return [SubtreeOut.from_subtree(t) for t in forest]


@router.get("/depth/{depth}", response_model=NodeList)
async def list_nodes_at_depth(
    depth: Annotated[int, Path(ge=0)],
    active_only: bool = False,
    query: TreeQuery = Depends(get_tree_query),
    session: AsyncSession = Depends(get_session),
) -> NodeList:
    return node_list(await query.get_nodes_at_depth(session, depth, active_only=active_only))


@router.get("/search", response_model=NodeList)
async def search_nodes(
    q: Annotated[str, Query(min_length=1, max_length=200)],
    limit: Annotated[int, Query(ge=1, le=500)] = 100,
    query: TreeQuery = Depends(get_tree_query),
    session: AsyncSession = Depends(get_session),
) -> NodeList:
    return node_list(await query.search(session, q, limit=limit))


@router.get("/by-code/{code}", response_model=NodeOut)
async def get_node_by_code(
    code: str,
    query: TreeQuery = Depends(get_tree_query),
    session: AsyncSession = Depends(get_session),
) -> NodeOut:
    return NodeOut.from_model(await query.get_by_code(session, code))


@router.post("", response_model=NodeOut, status_code=status.HTTP_201_CREATED)
async def create_node(
    payload: NodeCreateRequest,
    actor_id: str = Depends(get_actor_id),
    service: TreeService = Depends(get_tree_service),
    session: AsyncSession = Depends(get_session),
) -> NodeOut:
    node = await service.create_node(
        session,
        actor_id=actor_id,
        parent_id=payload.parent_id,
        type_id=payload.type_id,
        code=payload.code,
        name=payload.name,
        description=payload.description,
        order_index=payload.order_index,
        is_active=payload.is_active,
    )
    return NodeOut.from_model(node)


@router.get("/{node_id}", response_model=NodeOut)
async def get_node(
    node_id: int,
    query: TreeQuery = Depends(get_tree_query),
    session: AsyncSession = Depends(get_session),
) -> NodeOut:
    return NodeOut.from_model(await query.get_node(session, node_id))


@router.patch("/{node_id}", response_model=NodeOut)
async def patch_node(
    node_id: int,
    payload: NodePatchRequest,
    actor_id: str = Depends(get_actor_id),
    service: TreeService = Depends(get_tree_service),
    session: AsyncSession = Depends(get_session),
) -> NodeOut:
    node = await service.update_node(
        session,
        actor_id=actor_id,
        node_id=node_id,
        fields=payload.changed_fields(),
        expected_version=payload.expected_version,
    )
    return NodeOut.from_model(node)


@router.delete("/{node_id}", response_model=NodeOut)
async def delete_node(
    node_id: int,
    expected_version: Annotated[int | None, Query(ge=1)] = None,
    actor_id: str = Depends(get_actor_id),
    service: TreeService = Depends(get_tree_service),
    session: AsyncSession = Depends(get_session),
) -> NodeOut:
    node = await service.delete_node(
        session, actor_id=actor_id, node_id=node_id, expected_version=expected_version
    )
    return NodeOut.from_model(node)


@router.post("/{node_id}/move", response_model=NodeOut)
async def move_node(
    node_id: int,
    payload: NodeMoveRequest,
    actor_id: str = Depends(get_actor_id),
    service: TreeService = Depends(get_tree_service),
    session: AsyncSession = Depends(get_session),
) -> NodeOut:
    node = await service.move_node(
        session,
        actor_id=actor_id,
        node_id=node_id,
        new_parent_id=payload.new_parent_id,
        expected_version=payload.expected_version,
    )
    return NodeOut.from_model(node)


@router.get("/{node_id}/children", response_model=NodeList)
async def list_children(
    node_id: int,
    active_only: bool = False,
    query: TreeQuery = Depends(get_tree_query),
    session: AsyncSession = Depends(get_session),
) -> NodeList:
    return node_list(await query.get_children(session, node_id, active_only=active_only))


@router.put("/{node_id}/children/reorder", response_model=NodeList)
async def reorder_children(
    node_id: int,
    payload: ReorderRequest,
    actor_id: str = Depends(get_actor_id),
    service: TreeService = Depends(get_tree_service),
    session: AsyncSession = Depends(get_session),
) -> NodeList:
    children = await service.reorder_children(
        session, actor_id=actor_id, parent_id=node_id, order_map=payload.order
    )
    return node_list(children)


@router.get("/{node_id}/ancestors", response_model=NodeList)
async def list_ancestors(
    node_id: int,
    query: TreeQuery = Depends(get_tree_query),
    session: AsyncSession = Depends(get_session),
) -> NodeList:
    return node_list(await query.get_ancestors(session, node_id))


@router.get("/{node_id}/breadcrumb", response_model=NodeList)
async def get_breadcrumb(
    node_id: int,
    query: TreeQuery = Depends(get_tree_query),
    session: AsyncSession = Depends(get_session),
) -> NodeList:
    return node_list(await query.get_breadcrumb(session, node_id))


@router.get("/{node_id}/descendants", response_model=NodeList)
async def list_descendants(
    node_id: int,
    active_only: bool = False,
    query: TreeQuery = Depends(get_tree_query),
    session: AsyncSession = Depends(get_session),
) -> NodeList:
    return node_list(await query.get_descendants(session, node_id, active_only=active_only))


@router.get("/{node_id}/subtree", response_model=SubtreeOut)
async def get_subtree(
    node_id: int,
    max_depth: Annotated[int | None, Query(ge=0)] = None,
    active_only: bool = False,
    query: TreeQuery = Depends(get_tree_query),
    session: AsyncSession = Depends(get_session),
) -> SubtreeOut:
    subtree = await query.get_subtree(session, node_id, max_depth, active_only=active_only)
    return SubtreeOut.from_subtree(subtree)


@router.get("/{node_id}/statistics", response_model=StatisticsOut)
async def get_statistics(
    node_id: int,
    query: TreeQuery = Depends(get_tree_query),
    session: AsyncSession = Depends(get_session),
) -> StatisticsOut:
    return StatisticsOut.from_stats(await query.get_statistics(session, node_id))

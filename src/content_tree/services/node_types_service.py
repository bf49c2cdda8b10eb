from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

from sqlmodel.ext.asyncio.session import AsyncSession

from content_tree.audit import AuditEvent, AuditSink
from content_tree.errors import ConstraintViolation, DuplicateCode, NotFound
from content_tree.models import NodeType, node_type_snapshot
from content_tree.repositories.node_store import NodeStore
from content_tree.services.tree_service import run_in_transaction


UPDATABLE_TYPE_FIELDS = frozenset(
    {"name", "description", "max_children", "max_depth", "allowed_parent_type_ids", "is_active"}
)


@dataclass(frozen=True)
class TypeUsage:
    type_id: int
    total_nodes: int
    active_nodes: int


def _check_limits(fields: Mapping[str, object]) -> None:
    for key in ("max_children", "max_depth"):
        value = fields.get(key)
        if value is None:
            continue
        if not isinstance(value, int) or isinstance(value, bool) or value < 0:
            raise ConstraintViolation(f"{key} must be a non-negative integer or null")


class NodeTypeService:
    """Catalog of node types. System types are read-only."""

    def __init__(
        self, store: NodeStore, audit_sink: AuditSink, *, timeout_seconds: float = 30.0
    ) -> None:
        self._store: NodeStore = store
        self._audit_sink: AuditSink = audit_sink
        self._timeout_seconds: float = timeout_seconds

    def _audit(self, event: AuditEvent) -> None:
        self._audit_sink.record(event)

    async def _require_type(self, session: AsyncSession, type_id: int) -> NodeType:
        node_type = await self._store.get_type(session, type_id)
        if node_type is None:
            raise NotFound("node type not found", details={"type_id": type_id})
        return node_type

    async def _check_parent_types(
        self, session: AsyncSession, allowed: object, *, self_id: int | None = None
    ) -> None:
        if allowed is None:
            return
        if not isinstance(allowed, list) or not all(isinstance(x, int) for x in allowed):
            raise ConstraintViolation("allowed_parent_type_ids must be a list of type ids")
        wanted = {x for x in allowed if x != self_id}
        found = await self._store.get_types(session, wanted)
        missing = sorted(wanted - set(found))
        if missing:
            raise NotFound("node type not found", details={"type_ids": missing})

    async def list_node_types(self, session: AsyncSession) -> list[NodeType]:
        return await self._store.list_types(session)

    async def get_node_type(self, session: AsyncSession, type_id: int) -> NodeType:
        return await self._require_type(session, type_id)

    async def create_node_type(
        self,
        session: AsyncSession,
        *,
        actor_id: str,
        name: str,
        description: str | None = None,
        max_children: int | None = None,
        max_depth: int | None = None,
        allowed_parent_type_ids: list[int] | None = None,
        is_system: bool = False,
    ) -> NodeType:
        if not name.strip():
            raise ConstraintViolation("name is required")
        _check_limits({"max_children": max_children, "max_depth": max_depth})

        async def _apply() -> NodeType:
            if await self._store.get_type_by_name(session, name) is not None:
                raise DuplicateCode(f"node type {name!r} already exists", details={"name": name})
            await self._check_parent_types(session, allowed_parent_type_ids)
            node_type = await self._store.insert_type(
                session,
                NodeType(
                    name=name,
                    description=description,
                    max_children=max_children,
                    max_depth=max_depth,
                    allowed_parent_type_ids=allowed_parent_type_ids,
                    is_system=is_system,
                ),
            )
            self._audit(
                AuditEvent(
                    actor_id=actor_id,
                    operation="create_type",
                    entity_type="tree_node_type",
                    entity_id=node_type.id,
                    after=node_type_snapshot(node_type),
                )
            )
            return node_type

        return await run_in_transaction(session, _apply, timeout_seconds=self._timeout_seconds)

    async def update_node_type(
        self,
        session: AsyncSession,
        *,
        actor_id: str,
        type_id: int,
        fields: Mapping[str, object],
    ) -> NodeType:
        unknown = sorted(set(fields) - UPDATABLE_TYPE_FIELDS)
        if unknown:
            raise ConstraintViolation(
                f"fields {unknown} cannot be updated", details={"fields": unknown}
            )
        _check_limits(fields)

        async def _apply() -> NodeType:
            node_type = await self._require_type(session, type_id)
            if node_type.is_system:
                raise ConstraintViolation(
                    f"system node type {node_type.name!r} cannot be modified",
                    details={"type_id": type_id},
                )
            new_name = fields.get("name")
            if new_name is not None:
                if not isinstance(new_name, str) or not new_name.strip():
                    raise ConstraintViolation("name cannot be empty")
                other = await self._store.get_type_by_name(session, new_name)
                if other is not None and other.id != type_id:
                    raise DuplicateCode(
                        f"node type {new_name!r} already exists", details={"name": new_name}
                    )
            if "allowed_parent_type_ids" in fields:
                await self._check_parent_types(
                    session, fields["allowed_parent_type_ids"], self_id=type_id
                )

            before = node_type_snapshot(node_type)
            updated = await self._store.update_type(session, node_type, fields)
            self._audit(
                AuditEvent(
                    actor_id=actor_id,
                    operation="update_type",
                    entity_type="tree_node_type",
                    entity_id=type_id,
                    before=before,
                    after=node_type_snapshot(updated),
                )
            )
            return updated

        return await run_in_transaction(session, _apply, timeout_seconds=self._timeout_seconds)

    async def delete_node_type(self, session: AsyncSession, *, actor_id: str, type_id: int) -> None:
        async def _apply() -> None:
            node_type = await self._require_type(session, type_id)
            if node_type.is_system:
                raise ConstraintViolation(
                    f"system node type {node_type.name!r} cannot be deleted",
                    details={"type_id": type_id},
                )
            # Soft-deleted nodes still reference the type.
            used_by = await self._store.count_nodes_by_type(session, type_id)
            if used_by > 0:
                raise ConstraintViolation(
                    f"node type is used by {used_by} nodes",
                    details={"type_id": type_id, "node_count": used_by},
                )
            before = node_type_snapshot(node_type)
            await self._store.delete_type(session, node_type)
            self._audit(
                AuditEvent(
                    actor_id=actor_id,
                    operation="delete_type",
                    entity_type="tree_node_type",
                    entity_id=type_id,
                    before=before,
                )
            )

        await run_in_transaction(session, _apply, timeout_seconds=self._timeout_seconds)

    async def get_type_usage(self, session: AsyncSession, type_id: int) -> TypeUsage:
        await self._require_type(session, type_id)
        return TypeUsage(
            type_id=type_id,
            total_nodes=await self._store.count_nodes_by_type(session, type_id),
            active_nodes=await self._store.count_nodes_by_type(
                session, type_id, active_only=True
            ),
        )

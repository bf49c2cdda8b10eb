from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, TypeVar

import anyio
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError
from sqlmodel.ext.asyncio.session import AsyncSession

from content_tree.audit import AuditEvent, AuditSink, Operation
from content_tree.domain import path_codec
from content_tree.domain.tree_validator import TreeValidator
from content_tree.errors import ConstraintViolation, NotFound, StorageUnavailable, VersionConflict
from content_tree.models import NodeType, TreeNode, node_snapshot
from content_tree.repositories.node_store import NodeStore, translate_integrity_error


logger = logging.getLogger(__name__)

T = TypeVar("T")

UPDATABLE_FIELDS = frozenset({"name", "code", "description", "type_id", "is_active"})


async def _rollback_quietly(session: AsyncSession) -> None:
    # Shielded so a cancelled caller still releases the transaction.
    with anyio.CancelScope(shield=True):
        try:
            await session.rollback()
        except Exception:
            # The error that triggered the rollback wins.
            logger.debug("rollback failed", exc_info=True)


async def run_in_transaction(
    session: AsyncSession,
    apply: Callable[[], Awaitable[T]],
    *,
    timeout_seconds: float,
) -> T:
    """Run ``apply`` as exactly one transaction on ``session``.

    Commits on success. Any error, timeout or cancellation rolls everything
    back. Driver-level failures surface as ``StorageUnavailable``.
    """
    try:
        with anyio.fail_after(timeout_seconds):
            if session.in_transaction():
                out = await apply()
                await session.commit()
                return out
            async with session.begin():
                return await apply()
    except IntegrityError as exc:
        await _rollback_quietly(session)
        raise translate_integrity_error(exc) from exc
    except (OperationalError, InterfaceError) as exc:
        await _rollback_quietly(session)
        raise StorageUnavailable("storage unavailable", details={"error": type(exc).__name__}) from exc
    except DBAPIError as exc:
        await _rollback_quietly(session)
        if exc.connection_invalidated:
            raise StorageUnavailable("storage connection lost") from exc
        raise
    except TimeoutError as exc:
        await _rollback_quietly(session)
        raise StorageUnavailable(
            "tree operation timed out", details={"timeout_seconds": timeout_seconds}
        ) from exc
    except BaseException:
        await _rollback_quietly(session)
        raise


class TreeService:
    """Mutating operations on the content tree.

    Each public method is one transaction: validation happens before the
    first write, every write goes through the NodeStore, and one audit event
    is recorded before commit. Errors are raised to the caller, not logged.
    """

    def __init__(
        self,
        store: NodeStore,
        validator: TreeValidator,
        audit_sink: AuditSink,
        *,
        timeout_seconds: float = 30.0,
    ) -> None:
        self._store: NodeStore = store
        self._validator: TreeValidator = validator
        self._audit_sink: AuditSink = audit_sink
        self._timeout_seconds: float = timeout_seconds

    async def _run(self, session: AsyncSession, apply: Callable[[], Awaitable[T]]) -> T:
        return await run_in_transaction(session, apply, timeout_seconds=self._timeout_seconds)

    def _audit(
        self,
        *,
        actor_id: str,
        operation: Operation,
        entity_id: int | None,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
    ) -> None:
        self._audit_sink.record(
            AuditEvent(
                actor_id=actor_id,
                operation=operation,
                entity_type="tree_node",
                entity_id=entity_id,
                before=before,
                after=after,
            )
        )

    async def _require_node(
        self, session: AsyncSession, node_id: int, *, for_update: bool = False
    ) -> TreeNode:
        node = await self._store.get_by_id(session, node_id, for_update=for_update)
        if node is None:
            raise NotFound("node not found", details={"node_id": node_id})
        return node

    async def _require_type(self, session: AsyncSession, type_id: int) -> NodeType:
        node_type = await self._store.get_type(session, type_id)
        if node_type is None:
            raise NotFound("node type not found", details={"type_id": type_id})
        return node_type

    @staticmethod
    def _check_version(node: TreeNode, expected_version: int | None) -> int:
        if expected_version is None:
            return node.version
        if node.version != expected_version:
            raise VersionConflict(
                f"node {node.id} is at version {node.version}, expected {expected_version}",
                details={
                    "node_id": node.id,
                    "expected_version": expected_version,
                    "server_snapshot": node_snapshot(node),
                },
            )
        return expected_version

    async def create_node(
        self,
        session: AsyncSession,
        *,
        actor_id: str,
        parent_id: int | None,
        type_id: int,
        code: str,
        name: str,
        description: str | None = None,
        order_index: int | None = None,
        is_active: bool = True,
    ) -> TreeNode:
        if not code.strip():
            raise ConstraintViolation("code is required")
        if not name.strip():
            raise ConstraintViolation("name is required")

        async def _apply() -> TreeNode:
            parent: TreeNode | None = None
            parent_type: NodeType | None = None
            seen: tuple[int, str, int] | None = None
            if parent_id is not None:
                parent = await self._store.get_by_id(session, parent_id, for_update=True)
                if parent is None:
                    raise NotFound("parent node not found", details={"parent_id": parent_id})
                seen = (parent_id, parent.path, parent.version)
                parent_type = await self._require_type(session, parent.type_id)
            node_type = await self._require_type(session, type_id)

            siblings = await self._store.get_children(session, parent_id)
            self._validator.validate_create(parent, parent_type, node_type, len(siblings))
            self._validator.validate_code_unique(
                code, None, await self._store.get_by_code(session, code)
            )

            index = order_index
            if index is None:
                index = await self._store.get_max_order_index(session, parent_id) + 1
            else:
                self._validator.validate_order_slot(index, siblings)

            if seen is not None:
                await self._store.lock_lineage(session, *seen)

            node = TreeNode(
                name=name,
                code=code,
                description=description,
                type_id=type_id,
                parent_id=parent_id,
                order_index=index,
                is_active=is_active,
                version=1,
                created_by=actor_id,
            )
            node = await self._store.insert(
                session, node, parent_path=None if seen is None else seen[1]
            )
            self._audit(
                actor_id=actor_id,
                operation="create",
                entity_id=node.id,
                before=None,
                after=node_snapshot(node),
            )
            return node

        return await self._run(session, _apply)

    async def update_node(
        self,
        session: AsyncSession,
        *,
        actor_id: str,
        node_id: int,
        fields: Mapping[str, object],
        expected_version: int,
    ) -> TreeNode:
        unknown = sorted(set(fields) - UPDATABLE_FIELDS)
        if unknown:
            raise ConstraintViolation(
                f"fields {unknown} cannot be updated", details={"fields": unknown}
            )
        for key in ("name", "code"):
            if key in fields:
                value = fields[key]
                if not isinstance(value, str) or not value.strip():
                    raise ConstraintViolation(f"{key} cannot be empty")

        async def _apply() -> TreeNode:
            node = await self._require_node(session, node_id)
            version = self._check_version(node, expected_version)
            before = node_snapshot(node)

            new_type_id = fields.get("type_id")
            if new_type_id is not None and new_type_id != node.type_id:
                if not isinstance(new_type_id, int):
                    raise ConstraintViolation("type_id must be an integer")
                new_type = await self._require_type(session, new_type_id)
                parent_type: NodeType | None = None
                if node.parent_id is not None:
                    parent = await self._require_node(session, node.parent_id)
                    parent_type = await self._require_type(session, parent.type_id)
                child_count = await self._store.count_children(session, node_id)
                self._validator.validate_type_change(node, new_type, parent_type, child_count)

            new_code = fields.get("code")
            if isinstance(new_code, str) and new_code != node.code:
                self._validator.validate_code_unique(
                    new_code, node_id, await self._store.get_by_code(session, new_code)
                )

            values = dict(fields)
            values["modified_by"] = actor_id
            updated = await self._store.update_fields(session, node_id, values, version)
            self._audit(
                actor_id=actor_id,
                operation="update",
                entity_id=node_id,
                before=before,
                after=node_snapshot(updated),
            )
            return updated

        return await self._run(session, _apply)

    async def move_node(
        self,
        session: AsyncSession,
        *,
        actor_id: str,
        node_id: int,
        new_parent_id: int | None,
        expected_version: int | None = None,
    ) -> TreeNode:
        async def _apply() -> TreeNode:
            node = await self._require_node(session, node_id, for_update=True)
            version = self._check_version(node, expected_version)
            node_type = await self._require_type(session, node.type_id)

            new_parent: TreeNode | None = None
            parent_type: NodeType | None = None
            seen: tuple[int, str, int] | None = None
            if new_parent_id is not None:
                new_parent = await self._store.get_by_id(session, new_parent_id, for_update=True)
                if new_parent is None:
                    raise NotFound("new parent node not found", details={"parent_id": new_parent_id})
                seen = (new_parent_id, new_parent.path, new_parent.version)
                parent_type = await self._require_type(session, new_parent.type_id)

            sibling_count = await self._store.count_children(session, new_parent_id)
            if node.parent_id == new_parent_id:
                sibling_count -= 1

            subtree = await self._store.get_by_path_prefix(session, node.path)
            descendants = [d for d in subtree if d.id != node.id]
            types = await self._store.get_types(session, {d.type_id for d in descendants})
            self._validator.validate_move(
                node, node_type, new_parent, parent_type, sibling_count, descendants, types
            )

            old_prefix = node.path
            new_prefix = path_codec.child_path(None if seen is None else seen[1], node_id)
            order_index = await self._store.get_max_order_index(session, new_parent_id) + 1
            before = node_snapshot(node)
            if seen is not None:
                # The new prefix was built from this read of the parent.
                await self._store.lock_lineage(session, *seen)

            # The version-checked row update runs next: a lost race fails
            # here, before any descendant path is touched.
            moved = await self._store.update_fields(
                session,
                node_id,
                {
                    "parent_id": new_parent_id,
                    "path": new_prefix,
                    "order_index": order_index,
                    "modified_by": actor_id,
                },
                version,
            )
            rewritten = await self._store.bulk_rewrite_paths(session, old_prefix, new_prefix)

            after = node_snapshot(moved)
            after["descendants_rewritten"] = rewritten
            self._audit(
                actor_id=actor_id,
                operation="move",
                entity_id=node_id,
                before=before,
                after=after,
            )
            return moved

        return await self._run(session, _apply)

    async def reorder_children(
        self,
        session: AsyncSession,
        *,
        actor_id: str,
        parent_id: int | None,
        order_map: Mapping[int, int],
    ) -> list[TreeNode]:
        async def _apply() -> list[TreeNode]:
            if parent_id is not None:
                await self._require_node(session, parent_id, for_update=True)
            siblings = await self._store.get_children(session, parent_id)
            self._validator.validate_reorder(parent_id, order_map, siblings)
            if not order_map:
                return siblings

            before = {str(s.id): s.order_index for s in siblings}
            await self._store.set_order_indexes(
                session, parent_id, order_map, actor_id=actor_id
            )
            children = await self._store.get_children(session, parent_id)
            self._audit(
                actor_id=actor_id,
                operation="reorder",
                entity_id=parent_id,
                before={"order": before},
                after={"order": {str(c.id): c.order_index for c in children}},
            )
            return children

        return await self._run(session, _apply)

    async def delete_node(
        self,
        session: AsyncSession,
        *,
        actor_id: str,
        node_id: int,
        expected_version: int | None = None,
    ) -> TreeNode:
        async def _apply() -> TreeNode:
            node = await self._require_node(session, node_id, for_update=True)
            version = self._check_version(node, expected_version)
            node_type = await self._require_type(session, node.type_id)
            child_count = await self._store.count_children(session, node_id)
            self._validator.validate_delete(node, node_type, child_count)

            before = node_snapshot(node)
            deleted = await self._store.soft_delete(session, node_id, version, actor_id=actor_id)
            self._audit(
                actor_id=actor_id,
                operation="delete",
                entity_id=node_id,
                before=before,
                after=node_snapshot(deleted),
            )
            return deleted

        return await self._run(session, _apply)

from __future__ import annotations

import logging
import random
from typing import Any, cast

import anyio
import pytest
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from content_tree.audit import AuditEvent
from content_tree.db import session_scope
from content_tree.domain import path_codec
from content_tree.domain.tree_types import Bounded
from content_tree.domain.tree_validator import TreeValidator
from content_tree.errors import (
    ConstraintViolation,
    CycleDetected,
    DuplicateCode,
    HasChildren,
    NotASibling,
    NotFound,
    PathIntegrityError,
    StorageUnavailable,
    VersionConflict,
)
from content_tree.models import TreeNode, node_snapshot
from content_tree.repositories.node_store import SqlNodeStore
from content_tree.services.node_types_service import NodeTypeService
from content_tree.services.tree_query import TreeQuery
from content_tree.services.tree_service import TreeService, run_in_transaction


class RecordingAuditSink:
    def __init__(self) -> None:
        self.events: list[AuditEvent] = []

    def record(self, event: AuditEvent) -> None:
        self.events.append(event)


def _service(sink: RecordingAuditSink, **kwargs: Any) -> TreeService:
    store = kwargs.pop("store", None) or SqlNodeStore()
    validator = kwargs.pop("validator", None) or TreeValidator()
    return TreeService(store, validator, sink, **kwargs)


async def _create_type(name: str, **kwargs: Any) -> int:
    types = NodeTypeService(SqlNodeStore(), RecordingAuditSink())
    async with session_scope() as session:
        node_type = await types.create_node_type(session, actor_id="tester", name=name, **kwargs)
        assert node_type.id is not None
        return int(node_type.id)


async def _create(
    service: TreeService, *, parent_id: int | None, type_id: int, code: str, name: str | None = None
) -> TreeNode:
    async with session_scope() as session:
        return await service.create_node(
            session,
            actor_id="tester",
            parent_id=parent_id,
            type_id=type_id,
            code=code,
            name=name or code.title(),
        )


async def _snapshot() -> list[dict[str, Any]]:
    async with session_scope() as session:
        rows = (await session.exec(select(TreeNode).order_by(TreeNode.id))).all()
        return [{**node_snapshot(r), "modified_at": r.modified_at} for r in rows]


async def _get(node_id: int) -> TreeNode:
    async with session_scope() as session:
        return await TreeQuery(SqlNodeStore()).get_node(session, node_id)


def _assert_paths_consistent(rows: list[dict[str, Any]]) -> None:
    by_id = {r["id"]: r for r in rows}
    for r in rows:
        parent = by_id.get(r["parent_id"]) if r["parent_id"] is not None else None
        expected = path_codec.child_path(None if parent is None else parent["path"], r["id"])
        assert r["path"] == expected
        assert path_codec.decode(r["path"]).count(r["id"]) == 1


@pytest.mark.anyio
async def test_curriculum_scenario_create_reorder_move_cycle_and_delete(tree_db: str) -> None:
    _ = tree_db
    sink = RecordingAuditSink()
    service = _service(sink)
    subject = await _create_type("Subject")
    topic = await _create_type("Topic")

    math = await _create(service, parent_id=None, type_id=subject, code="MATH", name="Mathematics")
    assert math.path == f"-{math.id}-"
    assert math.version == 1

    alg = await _create(service, parent_id=math.id, type_id=topic, code="ALG", name="Algebra")
    assert alg.path == f"-{math.id}-{alg.id}-"
    assert alg.order_index == 1

    geom = await _create(service, parent_id=math.id, type_id=topic, code="GEOM", name="Geometry")
    assert geom.order_index == 2

    async with session_scope() as session:
        await service.reorder_children(
            session, actor_id="tester", parent_id=math.id, order_map={geom.id: 1, alg.id: 2}
        )
    async with session_scope() as session:
        children = await TreeQuery(SqlNodeStore()).get_children(session, math.id)
    assert [c.code for c in children] == ["GEOM", "ALG"]

    lin = await _create(service, parent_id=alg.id, type_id=topic, code="LIN")
    async with session_scope() as session:
        moved = await service.move_node(
            session, actor_id="tester", node_id=int(alg.id), new_parent_id=geom.id
        )
    assert moved.path == f"-{math.id}-{geom.id}-{alg.id}-"
    assert moved.parent_id == geom.id
    assert (await _get(int(lin.id))).path == f"-{math.id}-{geom.id}-{alg.id}-{lin.id}-"

    before = await _snapshot()
    async with session_scope() as session:
        with pytest.raises(CycleDetected):
            await service.move_node(
                session, actor_id="tester", node_id=int(math.id), new_parent_id=alg.id
            )
    assert await _snapshot() == before

    async with session_scope() as session:
        with pytest.raises(HasChildren):
            await service.delete_node(session, actor_id="tester", node_id=int(math.id))
    assert await _snapshot() == before
    _assert_paths_consistent(before)

    assert [e.operation for e in sink.events] == [
        "create",
        "create",
        "create",
        "reorder",
        "create",
        "move",
    ]
    move_event = sink.events[-1]
    assert move_event.entity_id == alg.id
    assert move_event.before is not None and move_event.after is not None
    assert move_event.before["path"] == f"-{math.id}-{alg.id}-"
    assert move_event.after["descendants_rewritten"] == 1


@pytest.mark.anyio
async def test_move_preserves_subtree_shape_and_bumps_versions(tree_db: str) -> None:
    _ = tree_db
    service = _service(RecordingAuditSink())
    folder = await _create_type("Folder")

    a = await _create(service, parent_id=None, type_id=folder, code="A")
    b = await _create(service, parent_id=None, type_id=folder, code="B")
    a1 = await _create(service, parent_id=a.id, type_id=folder, code="A1")
    a2 = await _create(service, parent_id=a.id, type_id=folder, code="A2")
    await _create(service, parent_id=a1.id, type_id=folder, code="A1X")
    await _create(service, parent_id=a1.id, type_id=folder, code="A1Y")
    await _create(service, parent_id=a2.id, type_id=folder, code="A2X")

    query = TreeQuery(SqlNodeStore())

    async def _shape(root_id: int) -> set[tuple[int, int, str]]:
        async with session_scope() as session:
            root = await query.get_node(session, root_id)
            base = path_codec.depth(root.path)
            rows = await query.get_descendants(session, root_id)
        return {(path_codec.depth(r.path) - base, r.order_index, r.code) for r in rows}

    async def _versions(root_id: int) -> dict[str, int]:
        async with session_scope() as session:
            return {r.code: r.version for r in await query.get_descendants(session, root_id)}

    shape_before = await _shape(int(a.id))
    versions_before = await _versions(int(a.id))

    async with session_scope() as session:
        moved = await service.move_node(
            session, actor_id="tester", node_id=int(a.id), new_parent_id=b.id, expected_version=1
        )
    assert moved.version == 2
    assert moved.order_index == 1

    assert await _shape(int(a.id)) == shape_before
    versions_after = await _versions(int(a.id))
    assert {k: v - 1 for k, v in versions_after.items()} == versions_before

    rows = await _snapshot()
    _assert_paths_consistent(rows)
    for r in rows:
        if r["code"] != "B":
            assert r["path"].startswith(f"-{b.id}-{a.id}-")
    async with session_scope() as session:
        subtree = await query.get_descendants(session, int(b.id))
    assert {r.code for r in subtree} == {"A", "A1", "A2", "A1X", "A1Y", "A2X"}


@pytest.mark.anyio
async def test_move_to_root_and_back(tree_db: str) -> None:
    _ = tree_db
    service = _service(RecordingAuditSink())
    folder = await _create_type("Folder")
    root = await _create(service, parent_id=None, type_id=folder, code="ROOT")
    child = await _create(service, parent_id=root.id, type_id=folder, code="CHILD")
    leaf = await _create(service, parent_id=child.id, type_id=folder, code="LEAF")

    async with session_scope() as session:
        moved = await service.move_node(
            session, actor_id="tester", node_id=int(child.id), new_parent_id=None
        )
    assert moved.parent_id is None
    assert moved.path == f"-{child.id}-"
    # Roots are ordered after the existing root.
    assert moved.order_index == 2
    assert (await _get(int(leaf.id))).path == f"-{child.id}-{leaf.id}-"

    async with session_scope() as session:
        back = await service.move_node(
            session, actor_id="tester", node_id=int(child.id), new_parent_id=root.id
        )
    assert back.path == f"-{root.id}-{child.id}-"
    assert (await _get(int(leaf.id))).path == f"-{root.id}-{child.id}-{leaf.id}-"


@pytest.mark.anyio
async def test_reorder_is_idempotent_and_rejects_strangers(tree_db: str) -> None:
    _ = tree_db
    sink = RecordingAuditSink()
    service = _service(sink)
    folder = await _create_type("Folder")
    parent = await _create(service, parent_id=None, type_id=folder, code="P")
    other = await _create(service, parent_id=None, type_id=folder, code="OTHER")
    kids = [
        await _create(service, parent_id=parent.id, type_id=folder, code=f"K{i}") for i in range(3)
    ]
    order_map = {int(kids[0].id): 3, int(kids[1].id): 1, int(kids[2].id): 2}

    async def _apply() -> list[str]:
        async with session_scope() as session:
            out = await service.reorder_children(
                session, actor_id="tester", parent_id=parent.id, order_map=order_map
            )
        return [c.code for c in out]

    first = await _apply()
    second = await _apply()
    assert first == second == ["K1", "K2", "K0"]

    before = await _snapshot()
    async with session_scope() as session:
        with pytest.raises(NotASibling):
            await service.reorder_children(
                session,
                actor_id="tester",
                parent_id=parent.id,
                order_map={int(kids[0].id): 1, int(other.id): 2},
            )
    assert await _snapshot() == before

    async with session_scope() as session:
        unchanged = await service.reorder_children(
            session, actor_id="tester", parent_id=parent.id, order_map={}
        )
    assert [c.code for c in unchanged] == ["K1", "K2", "K0"]
    assert [e.operation for e in sink.events].count("reorder") == 2


@pytest.mark.anyio
async def test_stale_move_loses_with_version_conflict(tree_db: str) -> None:
    _ = tree_db
    service = _service(RecordingAuditSink())
    folder = await _create_type("Folder")
    x = await _create(service, parent_id=None, type_id=folder, code="X")
    y = await _create(service, parent_id=None, type_id=folder, code="Y")
    node = await _create(service, parent_id=None, type_id=folder, code="N")
    seen_version = node.version

    async with session_scope() as session:
        await service.move_node(
            session,
            actor_id="first",
            node_id=int(node.id),
            new_parent_id=x.id,
            expected_version=seen_version,
        )

    before = await _snapshot()
    async with session_scope() as session:
        with pytest.raises(VersionConflict) as excinfo:
            await service.move_node(
                session,
                actor_id="second",
                node_id=int(node.id),
                new_parent_id=y.id,
                expected_version=seen_version,
            )
    assert excinfo.value.retryable is True
    assert excinfo.value.details["server_snapshot"]["parent_id"] == x.id
    assert await _snapshot() == before


@pytest.mark.anyio
async def test_conditional_update_rejects_write_that_passed_a_stale_read(tree_db: str) -> None:
    _ = tree_db
    service = _service(RecordingAuditSink())
    folder = await _create_type("Folder")
    node = await _create(service, parent_id=None, type_id=folder, code="N")
    store = SqlNodeStore()

    async with session_scope() as session:
        await store.update_fields(session, int(node.id), {"name": "first"}, 1)
        await session.commit()

    async with session_scope() as session:
        with pytest.raises(VersionConflict):
            await store.update_fields(session, int(node.id), {"name": "second"}, 1)
        await session.rollback()

    assert (await _get(int(node.id))).name == "first"


@pytest.mark.anyio
async def test_two_concurrent_moves_never_both_succeed(tree_db: str) -> None:
    _ = tree_db
    service = _service(RecordingAuditSink())
    folder = await _create_type("Folder")
    x = await _create(service, parent_id=None, type_id=folder, code="X")
    y = await _create(service, parent_id=None, type_id=folder, code="Y")
    node = await _create(service, parent_id=None, type_id=folder, code="N")

    outcomes: list[str] = []

    async def _move(target: int) -> None:
        async with session_scope() as session:
            try:
                await service.move_node(
                    session,
                    actor_id="racer",
                    node_id=int(node.id),
                    new_parent_id=target,
                    expected_version=1,
                )
            except (VersionConflict, StorageUnavailable) as exc:
                outcomes.append(exc.kind)
            else:
                outcomes.append("ok")

    async with anyio.create_task_group() as tg:
        tg.start_soon(_move, int(x.id))
        tg.start_soon(_move, int(y.id))

    assert outcomes.count("ok") == 1
    final = await _get(int(node.id))
    assert final.version == 2
    assert final.parent_id in {x.id, y.id}


@pytest.mark.anyio
async def test_delete_is_soft_and_frees_code_and_slot(tree_db: str) -> None:
    _ = tree_db
    sink = RecordingAuditSink()
    service = _service(sink)
    folder = await _create_type("Folder")
    parent = await _create(service, parent_id=None, type_id=folder, code="P")
    child = await _create(service, parent_id=parent.id, type_id=folder, code="C")

    async with session_scope() as session:
        with pytest.raises(VersionConflict):
            await service.delete_node(
                session, actor_id="tester", node_id=int(child.id), expected_version=7
            )

    async with session_scope() as session:
        deleted = await service.delete_node(
            session, actor_id="remover", node_id=int(child.id), expected_version=1
        )
    assert deleted.is_deleted is True
    assert deleted.lifecycle.deleted_by == "remover"
    assert deleted.lifecycle.deleted_at is not None

    async with session_scope() as session:
        with pytest.raises(NotFound):
            await TreeQuery(SqlNodeStore()).get_node(session, int(child.id))

    # The code and the order slot are free again.
    again = await _create(service, parent_id=parent.id, type_id=folder, code="C")
    assert again.order_index == 1

    async with session_scope() as session:
        with pytest.raises(NotFound):
            await service.delete_node(session, actor_id="tester", node_id=int(child.id))
    assert sink.events[-1].operation == "create"


@pytest.mark.anyio
async def test_create_enforces_codes_and_type_constraints(tree_db: str) -> None:
    _ = tree_db
    service = _service(RecordingAuditSink(), validator=TreeValidator(max_depth=Bounded(3)))
    book = await _create_type("Book", max_children=2)
    chapter = await _create_type("Chapter", allowed_parent_type_ids=[book], max_depth=1)
    system = await _create_type("System", is_system=True)

    b = await _create(service, parent_id=None, type_id=book, code="BOOK")
    await _create(service, parent_id=b.id, type_id=chapter, code="CH1")
    ch2 = await _create(service, parent_id=b.id, type_id=chapter, code="CH2")

    with pytest.raises(DuplicateCode):
        await _create(service, parent_id=None, type_id=book, code="BOOK")
    with pytest.raises(ConstraintViolation, match="at most 2 children"):
        await _create(service, parent_id=b.id, type_id=chapter, code="CH3")
    with pytest.raises(ConstraintViolation, match="cannot be a root"):
        await _create(service, parent_id=None, type_id=chapter, code="LOOSE")
    with pytest.raises(ConstraintViolation):
        await _create(service, parent_id=ch2.id, type_id=chapter, code="NESTED")
    with pytest.raises(NotFound):
        await _create(service, parent_id=999, type_id=book, code="ORPHAN")
    with pytest.raises(NotFound):
        await _create(service, parent_id=None, type_id=999, code="NOTYPE")

    sys_node = await _create(service, parent_id=None, type_id=system, code="SYS")
    async with session_scope() as session:
        with pytest.raises(ConstraintViolation, match="system type"):
            await service.delete_node(session, actor_id="tester", node_id=int(sys_node.id))

    # Explicit order index must not collide with a live sibling.
    async with session_scope() as session:
        with pytest.raises(ConstraintViolation, match="taken"):
            await service.create_node(
                session,
                actor_id="tester",
                parent_id=None,
                type_id=book,
                code="BOOK2",
                name="Book 2",
                order_index=1,
            )


@pytest.mark.anyio
async def test_move_respects_type_constraints_of_target(tree_db: str) -> None:
    _ = tree_db
    service = _service(RecordingAuditSink())
    shelf = await _create_type("Shelf", max_children=1)
    folder = await _create_type("Folder")
    shallow = await _create_type("Shallow", max_depth=1)

    s = await _create(service, parent_id=None, type_id=shelf, code="SHELF")
    await _create(service, parent_id=s.id, type_id=folder, code="TAKEN")
    f = await _create(service, parent_id=None, type_id=folder, code="F")
    g = await _create(service, parent_id=f.id, type_id=folder, code="G")
    h = await _create(service, parent_id=None, type_id=folder, code="H")
    await _create(service, parent_id=h.id, type_id=shallow, code="SH")

    before = await _snapshot()
    async with session_scope() as session:
        with pytest.raises(ConstraintViolation, match="at most 1 children"):
            await service.move_node(
                session, actor_id="tester", node_id=int(f.id), new_parent_id=s.id
            )
    # SH would land at depth 2 under G.
    async with session_scope() as session:
        with pytest.raises(ConstraintViolation, match="exceeds max depth"):
            await service.move_node(
                session, actor_id="tester", node_id=int(h.id), new_parent_id=g.id
            )
    assert await _snapshot() == before


@pytest.mark.anyio
async def test_update_node_fields_code_and_type(tree_db: str) -> None:
    _ = tree_db
    sink = RecordingAuditSink()
    service = _service(sink)
    folder = await _create_type("Folder")
    leafy = await _create_type("Leafy", max_children=0)
    p = await _create(service, parent_id=None, type_id=folder, code="P")
    await _create(service, parent_id=p.id, type_id=folder, code="Q")

    async with session_scope() as session:
        updated = await service.update_node(
            session,
            actor_id="editor",
            node_id=int(p.id),
            fields={"name": "Renamed", "description": "about"},
            expected_version=1,
        )
    assert updated.name == "Renamed"
    assert updated.version == 2
    assert updated.modified_by == "editor"
    assert updated.path == p.path

    async def _update(fields: dict[str, object], version: int) -> None:
        async with session_scope() as session:
            await service.update_node(
                session,
                actor_id="editor",
                node_id=int(p.id),
                fields=fields,
                expected_version=version,
            )

    with pytest.raises(VersionConflict):
        await _update({"name": "x"}, 1)
    with pytest.raises(DuplicateCode):
        await _update({"code": "Q"}, 2)
    with pytest.raises(ConstraintViolation, match="cannot be updated"):
        await _update({"path": "-9-"}, 2)
    # P holds a child; a type that allows none is rejected.
    with pytest.raises(ConstraintViolation, match="at most 0 children"):
        await _update({"type_id": leafy}, 2)

    assert [e.operation for e in sink.events].count("update") == 1
    assert sink.events[-1].before is not None
    assert sink.events[-1].before["name"] == "P"


@pytest.mark.anyio
async def test_failed_step_rolls_back_the_whole_move(tree_db: str) -> None:
    _ = tree_db

    class _BrokenStore(SqlNodeStore):
        async def bulk_rewrite_paths(
            self, session: AsyncSession, old_prefix: str, new_prefix: str
        ) -> int:
            await super().bulk_rewrite_paths(session, old_prefix, new_prefix)
            raise RuntimeError("disk on fire")

    ok = _service(RecordingAuditSink())
    folder = await _create_type("Folder")
    a = await _create(ok, parent_id=None, type_id=folder, code="A")
    await _create(ok, parent_id=a.id, type_id=folder, code="A1")
    b = await _create(ok, parent_id=None, type_id=folder, code="B")

    sink = RecordingAuditSink()
    broken = _service(sink, store=_BrokenStore())
    before = await _snapshot()
    async with session_scope() as session:
        with pytest.raises(RuntimeError):
            await broken.move_node(
                session, actor_id="tester", node_id=int(a.id), new_parent_id=b.id
            )
    assert await _snapshot() == before
    assert sink.events == []


@pytest.mark.anyio
async def test_timeout_surfaces_as_storage_unavailable(tree_db: str) -> None:
    _ = tree_db

    async def _slow() -> None:
        await anyio.sleep(5)

    async with session_scope() as session:
        with pytest.raises(StorageUnavailable) as excinfo:
            await run_in_transaction(session, _slow, timeout_seconds=0.05)
    assert excinfo.value.retryable is True
    assert excinfo.value.details["timeout_seconds"] == 0.05


class _PausingStore(SqlNodeStore):
    """Stops a write between its reads and its first write."""

    def __init__(self) -> None:
        self.reached = anyio.Event()
        self.resume = anyio.Event()

    async def get_max_order_index(self, session: AsyncSession, parent_id: int | None) -> int:
        value = await super().get_max_order_index(session, parent_id)
        self.reached.set()
        await self.resume.wait()
        return value


@pytest.mark.anyio
async def test_move_under_a_parent_that_moved_meanwhile_conflicts(tree_db: str) -> None:
    _ = tree_db
    fast = _service(RecordingAuditSink())
    folder = await _create_type("Folder")
    p = await _create(fast, parent_id=None, type_id=folder, code="P")
    z = await _create(fast, parent_id=None, type_id=folder, code="Z")
    x = await _create(fast, parent_id=None, type_id=folder, code="X")

    store = _PausingStore()
    slow = _service(RecordingAuditSink(), store=store)
    outcomes: list[str] = []

    async def _slow_move() -> None:
        async with session_scope() as session:
            try:
                await slow.move_node(
                    session, actor_id="slow", node_id=int(x.id), new_parent_id=p.id
                )
            except VersionConflict as exc:
                outcomes.append(exc.kind)
            else:
                outcomes.append("ok")

    async with anyio.create_task_group() as tg:
        tg.start_soon(_slow_move)
        await store.reached.wait()
        async with session_scope() as session:
            await fast.move_node(session, actor_id="fast", node_id=int(p.id), new_parent_id=z.id)
        store.resume.set()

    assert outcomes == ["version_conflict"]
    rows = await _snapshot()
    _assert_paths_consistent(rows)
    assert (await _get(int(p.id))).path == f"-{z.id}-{p.id}-"
    assert (await _get(int(x.id))).path == f"-{x.id}-"


@pytest.mark.anyio
async def test_create_under_a_parent_that_moved_meanwhile_conflicts(tree_db: str) -> None:
    _ = tree_db
    fast = _service(RecordingAuditSink())
    folder = await _create_type("Folder")
    p = await _create(fast, parent_id=None, type_id=folder, code="P")
    z = await _create(fast, parent_id=None, type_id=folder, code="Z")

    store = _PausingStore()
    sink = RecordingAuditSink()
    slow = _service(sink, store=store)
    outcomes: list[str] = []

    async def _slow_create() -> None:
        try:
            await _create(slow, parent_id=p.id, type_id=folder, code="C")
        except VersionConflict as exc:
            outcomes.append(exc.kind)
        else:
            outcomes.append("ok")

    async with anyio.create_task_group() as tg:
        tg.start_soon(_slow_create)
        await store.reached.wait()
        async with session_scope() as session:
            await fast.move_node(session, actor_id="fast", node_id=int(p.id), new_parent_id=z.id)
        store.resume.set()

    assert outcomes == ["version_conflict"]
    assert sink.events == []
    rows = await _snapshot()
    _assert_paths_consistent(rows)
    assert "C" not in {r["code"] for r in rows}

    # A retry reads the moved parent and builds the right path.
    c = await _create(fast, parent_id=p.id, type_id=folder, code="C")
    assert c.path == f"-{z.id}-{p.id}-{c.id}-"


def _assert_tree_invariants(rows: list[dict[str, Any]]) -> None:
    _assert_paths_consistent(rows)
    live = [r for r in rows if not r["is_deleted"]]
    for r in rows:
        ids = path_codec.decode(r["path"])
        assert len(ids) == len(set(ids))
    slots = [(r["parent_id"], r["order_index"]) for r in live]
    assert len(slots) == len(set(slots))
    codes = [r["code"] for r in live]
    assert len(codes) == len(set(codes))


@pytest.mark.anyio
@pytest.mark.parametrize("seed", [7, 2024])
async def test_random_operations_keep_the_tree_consistent(tree_db: str, seed: int) -> None:
    _ = tree_db
    rng = random.Random(seed)
    service = _service(RecordingAuditSink())
    folder = await _create_type("Folder")
    counter = 0

    async def _add(parent_id: int | None) -> None:
        nonlocal counter
        counter += 1
        await _create(service, parent_id=parent_id, type_id=folder, code=f"N{counter}")

    for _ in range(8):
        rows = [r for r in await _snapshot() if not r["is_deleted"]]
        await _add(rng.choice([None, *(r["id"] for r in rows)]))

    for _ in range(40):
        rows = await _snapshot()
        live = [r for r in rows if not r["is_deleted"]]
        action = rng.choice(["create", "move", "move", "reorder", "delete"])

        if action == "create" or not live:
            await _add(rng.choice([None, *(r["id"] for r in live)]))

        elif action == "move":
            node = rng.choice(live)
            target = rng.choice([None, *live])
            target_id = None if target is None else target["id"]
            async with session_scope() as session:
                if target is not None and target["path"].startswith(node["path"]):
                    with pytest.raises(CycleDetected):
                        await service.move_node(
                            session, actor_id="rng", node_id=node["id"], new_parent_id=target_id
                        )
                    assert await _snapshot() == rows
                else:
                    moved = await service.move_node(
                        session, actor_id="rng", node_id=node["id"], new_parent_id=target_id
                    )
                    assert moved.parent_id == target_id

        elif action == "reorder":
            parent_id = rng.choice([None, *(r["id"] for r in live)])
            kids = [r["id"] for r in live if r["parent_id"] == parent_id]
            rng.shuffle(kids)
            if kids:
                async with session_scope() as session:
                    out = await service.reorder_children(
                        session,
                        actor_id="rng",
                        parent_id=parent_id,
                        order_map={k: i + 1 for i, k in enumerate(kids)},
                    )
                assert [c.id for c in out] == kids

        else:
            node = rng.choice(live)
            has_kids = any(r["parent_id"] == node["id"] for r in live)
            async with session_scope() as session:
                if has_kids:
                    with pytest.raises(HasChildren):
                        await service.delete_node(session, actor_id="rng", node_id=node["id"])
                    assert await _snapshot() == rows
                else:
                    await service.delete_node(session, actor_id="rng", node_id=node["id"])

        _assert_tree_invariants(await _snapshot())


@pytest.mark.anyio
async def test_failed_rollback_is_logged_and_the_original_error_wins(
    caplog: pytest.LogCaptureFixture,
) -> None:
    class _DeadSession:
        def in_transaction(self) -> bool:
            return True

        async def commit(self) -> None:
            raise AssertionError("commit must not run")

        async def rollback(self) -> None:
            raise RuntimeError("connection gone")

    async def _reject() -> None:
        raise ConstraintViolation("rejected")

    caplog.set_level(logging.DEBUG, logger="content_tree.services.tree_service")
    with pytest.raises(ConstraintViolation, match="rejected"):
        await run_in_transaction(cast(AsyncSession, _DeadSession()), _reject, timeout_seconds=5)
    assert "rollback failed" in caplog.text
    assert "connection gone" in caplog.text


@pytest.mark.anyio
async def test_insert_that_allocates_no_id_is_a_path_integrity_error() -> None:
    class _NoIdSession:
        def add(self, obj: object) -> None:
            _ = obj

        async def flush(self) -> None:
            return None

    node = TreeNode(name="n", code="N", type_id=1, order_index=1)
    with pytest.raises(PathIntegrityError) as excinfo:
        await SqlNodeStore().insert(cast(AsyncSession, _NoIdSession()), node, parent_path=None)
    assert excinfo.value.fatal is True

from __future__ import annotations

from typing import Annotated

from fastapi import Header, Request

from content_tree.audit import AuditSink, LoggingAuditSink
from content_tree.config import settings
from content_tree.domain.tree_validator import TreeValidator
from content_tree.repositories.node_store import SqlNodeStore
from content_tree.services.node_types_service import NodeTypeService
from content_tree.services.tree_query import TreeQuery
from content_tree.services.tree_service import TreeService


def get_actor_id(
    x_actor_id: Annotated[str | None, Header(max_length=100)] = None,
) -> str:
    # Authentication is out of scope; callers identify themselves.
    if x_actor_id is not None and x_actor_id.strip():
        return x_actor_id.strip()
    return settings.default_actor_id


def get_audit_sink(request: Request) -> AuditSink:
    # Tests swap the sink via app.state.
    sink = getattr(request.app.state, "audit_sink", None)
    if sink is None:
        sink = LoggingAuditSink()
        request.app.state.audit_sink = sink
    return sink


def get_tree_service(request: Request) -> TreeService:
    return TreeService(
        SqlNodeStore(),
        TreeValidator(max_depth=settings.tree_depth_limit()),
        get_audit_sink(request),
        timeout_seconds=settings.tree_operation_timeout_seconds,
    )


def get_tree_query() -> TreeQuery:
    return TreeQuery(SqlNodeStore())


def get_node_type_service(request: Request) -> NodeTypeService:
    return NodeTypeService(
        SqlNodeStore(),
        get_audit_sink(request),
        timeout_seconds=settings.tree_operation_timeout_seconds,
    )

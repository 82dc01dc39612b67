# routers/graphql_router.py — GraphQL queries + real-time subscriptions
"""
Queries resolve through BoardService like every other surface. Subscriptions
hold one EventBus subscription each; project-scoped channels are filtered
by projectId at delivery time. When a client disconnects, strawberry closes
the resolver generator, which closes its event stream and unregisters the
bus subscription before aclose() returns.
"""
import asyncio
import logging
from contextlib import aclosing, asynccontextmanager
from typing import AsyncGenerator, List, Optional

import strawberry
from fastapi import Depends
from graphql import GraphQLError
from strawberry.fastapi import BaseContext, GraphQLRouter
from starlette.requests import HTTPConnection
from strawberry.subscriptions import GRAPHQL_TRANSPORT_WS_PROTOCOL, GRAPHQL_WS_PROTOCOL
from strawberry.types import Info

from board_service import BoardService, get_board_service, get_event_bus, DEFAULT_PER_PAGE
from errors import BoardError, NotFoundError
from events import EventBus, EventChannel

logger = logging.getLogger("agentboard.graphql")


class BoardContext(BaseContext):
    """Per-operation context.

    Over HTTP every resolver shares the request's service. A websocket lives
    as long as the client stays connected, so when a session factory is given
    each resolver call opens its own short session instead of pinning one
    connection for the whole subscription.
    """

    def __init__(self, service: Optional[BoardService], bus: EventBus,
                 session_factory=None, lock: Optional[asyncio.Lock] = None):
        super().__init__()
        self.service = service
        self.bus = bus
        self.session_factory = session_factory
        self.lock = lock

    @asynccontextmanager
    async def board(self):
        if self.session_factory is None:
            yield self.service
            return
        async with self.session_factory() as db:
            yield BoardService(db, self.bus, self.lock)


async def get_context(
    conn: HTTPConnection,
    service: BoardService = Depends(get_board_service),
    bus: EventBus = Depends(get_event_bus),
) -> BoardContext:
    if conn.scope["type"] == "websocket":
        return BoardContext(None, bus, conn.app.state.session_factory, conn.app.state.write_lock)
    return BoardContext(service, bus)


def _build(cls, data: Optional[dict]):
    """Instantiate a strawberry type from a record dict, ignoring extra keys."""
    if data is None:
        return None
    fields = cls.__annotations__
    return cls(**{k: v for k, v in data.items() if k in fields})


async def _resolve(awaitable):
    try:
        return await awaitable
    except BoardError as e:
        raise GraphQLError(e.message, extensions={"code": e.code})


# ============================================================
# TYPES
# ============================================================

@strawberry.type(name="Agent")
class AgentType:
    id: str
    name: str
    created_at: Optional[str] = None


async def _agent(info: Info, agent_id: Optional[str]) -> Optional[AgentType]:
    if not agent_id:
        return None
    async with info.context.board() as service:
        agent = await service.find_agent(agent_id)
    return _build(AgentType, agent.model_dump()) if agent else None


@strawberry.type(name="Comment")
class CommentType:
    id: str
    ticket_id: str
    agent_id: str
    body: str
    created_at: Optional[str] = None

    @strawberry.field
    async def agent(self, info: Info) -> Optional[AgentType]:
        return await _agent(info, self.agent_id)


@strawberry.type(name="Revision")
class RevisionType:
    id: int
    ticket_id: str
    field: str
    old_value: str
    new_value: str
    agent_id: Optional[str] = None
    timestamp: Optional[str] = None

    @strawberry.field
    async def agent(self, info: Info) -> Optional[AgentType]:
        return await _agent(info, self.agent_id)


@strawberry.type(name="Ticket")
class TicketType:
    id: str
    project_id: str
    title: str
    description: str
    column: str
    position: int
    agent_id: Optional[str] = None
    assignee_id: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @strawberry.field
    async def agent(self, info: Info) -> Optional[AgentType]:
        return await _agent(info, self.agent_id)

    @strawberry.field
    async def assignee(self, info: Info) -> Optional[AgentType]:
        return await _agent(info, self.assignee_id)

    @strawberry.field
    async def comments(self, info: Info) -> List[CommentType]:
        async with info.context.board() as service:
            comments = await _resolve(service.get_comments_by_ticket(self.project_id, self.id))
        return [_build(CommentType, c.model_dump()) for c in comments]


@strawberry.type(name="TicketPage")
class TicketPageType:
    data: List[TicketType]
    total: int
    page: int
    per_page: int
    total_pages: int


@strawberry.type(name="Project")
class ProjectType:
    id: str
    name: str
    description: str
    created_at: Optional[str] = None

    @strawberry.field
    async def tickets(self, info: Info) -> List[TicketType]:
        async with info.context.board() as service:
            tickets = await _resolve(service.list_project_tickets(self.id))
        return [_build(TicketType, t.model_dump()) for t in tickets]


@strawberry.type(name="Activity")
class ActivityType:
    id: int
    project_id: str
    action: str
    details: str
    ticket_id: Optional[str] = None
    agent_id: Optional[str] = None
    timestamp: Optional[str] = None

    @strawberry.field
    async def agent(self, info: Info) -> Optional[AgentType]:
        return await _agent(info, self.agent_id)


@strawberry.type(name="AuditEntry")
class AuditEntryType:
    id: int
    method: str
    path: str
    status_code: int
    agent_id: Optional[str] = None
    details: Optional[str] = None
    timestamp: Optional[str] = None


@strawberry.type(name="TicketViewed")
class TicketViewedType:
    project_id: str
    ticket_id: str
    agent_id: Optional[str] = None
    agent_name: Optional[str] = None


@strawberry.type(name="AgentChange")
class AgentChangeType:
    action: str
    agent: AgentType


@strawberry.type(name="ProjectChange")
class ProjectChangeType:
    action: str
    project: ProjectType


# ============================================================
# QUERY
# ============================================================

@strawberry.type
class Query:

    @strawberry.field
    async def projects(self, info: Info) -> List[ProjectType]:
        async with info.context.board() as service:
            return [_build(ProjectType, p.model_dump()) for p in await service.get_all_projects()]

    @strawberry.field
    async def project(self, info: Info, id: str) -> Optional[ProjectType]:
        try:
            async with info.context.board() as service:
                project = await service.get_project(id)
        except NotFoundError:
            return None
        return _build(ProjectType, project.model_dump())

    @strawberry.field
    async def agents(self, info: Info) -> List[AgentType]:
        async with info.context.board() as service:
            return [_build(AgentType, a.model_dump()) for a in await service.get_all_agents()]

    @strawberry.field
    async def tickets(self, info: Info, project_id: str, column: Optional[str] = None,
                      page: int = 1, per_page: int = DEFAULT_PER_PAGE) -> TicketPageType:
        async with info.context.board() as service:
            result = await _resolve(service.get_tickets_by_project(
                project_id, column=column, page=page, per_page=per_page,
            ))
        return TicketPageType(
            data=[_build(TicketType, t.model_dump()) for t in result.data],
            total=result.total,
            page=result.page,
            per_page=result.per_page,
            total_pages=result.total_pages,
        )

    @strawberry.field
    async def ticket(self, info: Info, project_id: str, id: str) -> Optional[TicketType]:
        try:
            async with info.context.board() as service:
                ticket = await service.get_ticket(project_id, id)
        except NotFoundError:
            return None
        return _build(TicketType, ticket.model_dump())

    @strawberry.field
    async def revisions(self, info: Info, project_id: str, ticket_id: str) -> List[RevisionType]:
        async with info.context.board() as service:
            revisions = await _resolve(service.get_revisions_by_ticket(project_id, ticket_id))
        return [_build(RevisionType, r.model_dump()) for r in revisions]

    @strawberry.field
    async def activities(self, info: Info, project_id: str, limit: int = 100) -> List[ActivityType]:
        async with info.context.board() as service:
            activities = await _resolve(service.get_activities_by_project(project_id, limit))
        return [_build(ActivityType, a.model_dump()) for a in activities]


# ============================================================
# SUBSCRIPTIONS
# ============================================================

async def event_stream(bus: EventBus, channel: EventChannel,
                       project_id: Optional[str] = None) -> AsyncGenerator[dict, None]:
    predicate = (lambda payload: payload.get("project_id") == project_id) if project_id else None
    async with bus.subscribe(channel, predicate=predicate) as sub:
        logger.debug(f"GraphQL subscription opened on {channel.value} project={project_id}")
        async for payload in sub:
            yield payload
    logger.debug(f"GraphQL subscription closed on {channel.value}")


@strawberry.type
class Subscription:

    @strawberry.subscription
    async def ticket_created(self, info: Info, project_id: str) -> AsyncGenerator[TicketType, None]:
        async with aclosing(event_stream(info.context.bus, EventChannel.TICKET_CREATED, project_id)) as stream:
            async for payload in stream:
                yield _build(TicketType, payload)

    @strawberry.subscription
    async def ticket_updated(self, info: Info, project_id: str) -> AsyncGenerator[TicketType, None]:
        async with aclosing(event_stream(info.context.bus, EventChannel.TICKET_UPDATED, project_id)) as stream:
            async for payload in stream:
                yield _build(TicketType, payload)

    @strawberry.subscription
    async def ticket_moved(self, info: Info, project_id: str) -> AsyncGenerator[TicketType, None]:
        async with aclosing(event_stream(info.context.bus, EventChannel.TICKET_MOVED, project_id)) as stream:
            async for payload in stream:
                yield _build(TicketType, payload)

    @strawberry.subscription
    async def ticket_deleted(self, info: Info, project_id: str) -> AsyncGenerator[TicketType, None]:
        async with aclosing(event_stream(info.context.bus, EventChannel.TICKET_DELETED, project_id)) as stream:
            async for payload in stream:
                yield _build(TicketType, payload)

    @strawberry.subscription
    async def comment_added(self, info: Info, project_id: str) -> AsyncGenerator[CommentType, None]:
        async with aclosing(event_stream(info.context.bus, EventChannel.COMMENT_ADDED, project_id)) as stream:
            async for payload in stream:
                yield _build(CommentType, payload)

    @strawberry.subscription
    async def activity_added(self, info: Info, project_id: str) -> AsyncGenerator[ActivityType, None]:
        async with aclosing(event_stream(info.context.bus, EventChannel.ACTIVITY_ADDED, project_id)) as stream:
            async for payload in stream:
                yield _build(ActivityType, payload)

    @strawberry.subscription
    async def ticket_viewed(self, info: Info, project_id: str) -> AsyncGenerator[TicketViewedType, None]:
        async with aclosing(event_stream(info.context.bus, EventChannel.TICKET_VIEWED, project_id)) as stream:
            async for payload in stream:
                yield _build(TicketViewedType, payload)

    @strawberry.subscription
    async def agent_changed(self, info: Info) -> AsyncGenerator[AgentChangeType, None]:
        async with aclosing(event_stream(info.context.bus, EventChannel.AGENT_CHANGED)) as stream:
            async for payload in stream:
                yield AgentChangeType(action=payload["action"], agent=_build(AgentType, payload["agent"]))

    @strawberry.subscription
    async def project_changed(self, info: Info) -> AsyncGenerator[ProjectChangeType, None]:
        async with aclosing(event_stream(info.context.bus, EventChannel.PROJECT_CHANGED)) as stream:
            async for payload in stream:
                yield ProjectChangeType(action=payload["action"], project=_build(ProjectType, payload["project"]))

    @strawberry.subscription
    async def audit_added(self, info: Info) -> AsyncGenerator[AuditEntryType, None]:
        async with aclosing(event_stream(info.context.bus, EventChannel.AUDIT_ADDED)) as stream:
            async for payload in stream:
                yield _build(AuditEntryType, payload)


schema = strawberry.Schema(query=Query, subscription=Subscription)

router = GraphQLRouter(
    schema,
    context_getter=get_context,
    subscription_protocols=[GRAPHQL_TRANSPORT_WS_PROTOCOL, GRAPHQL_WS_PROTOCOL],
)

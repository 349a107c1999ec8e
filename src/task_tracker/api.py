"""
FastAPI Backend for the Task Tracker

Provides the HTTP surface standing in for the application's pages: sign-up /
sign-in / settings, the task list page (filter + sort projection), the
add-task and edit forms, the status menu and the task detail page with
history and comments.

Every /api route requires the backend anonymous key in the ``apikey`` header;
task routes additionally require ``Authorization: Bearer <access token>``.
Remote writes go through TaskRemoteGateway in a worker thread, and the
caller's TaskListState is only updated after the write (and its history
append) succeeded.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from .auth import AuthError, User
from .backend import BackendClient
from .config import ConfigurationError, Settings
from .dates import classify_due_date
from .gateway import HistoryWriteError, StaleTaskError, TaskRemoteGateway
from .models import (
    STATUS_COLORS,
    STATUS_DISPLAY_NAMES,
    TASK_SIZE_DESCRIPTIONS,
    CommentRequest,
    CommentResponse,
    ConfirmEmailRequest,
    FieldUpdateRequest,
    HealthResponse,
    HistoryEntryView,
    SessionResponse,
    SignInRequest,
    SignUpRequest,
    SignUpResponse,
    SortSpec,
    StatusGroup,
    StatusUpdateRequest,
    Task,
    TaskDetailResponse,
    TaskDraft,
    TaskListResponse,
    TaskMutationResponse,
    TaskStatus,
    TaskView,
    UserResponse,
    ViewUpdateRequest,
    create_error_response,
    create_success_response,
)
from .store import RecordStoreError
from .views import BusyError, ViewSession, ViewSessionRegistry

logger = logging.getLogger(__name__)

FILTER_DIMENSIONS = ("priority", "size", "category", "time_frame")

router = APIRouter()


@dataclass
class RequestContext:
    """Signed-in caller: session token, identity, gateway and view state."""

    token: str
    user: User
    gateway: TaskRemoteGateway
    view: ViewSession


# Dependencies


def get_backend(request: Request) -> BackendClient:
    """
    FastAPI dependency to provide the backend client.

    Raises:
        HTTPException: 503 if the backend is not open
    """
    backend = getattr(request.app.state, "backend", None)
    if backend is None or not backend.is_open:
        raise HTTPException(status_code=503, detail="Backend not available")
    return backend


def require_api_key(
    backend: BackendClient = Depends(get_backend),
    apikey: Optional[str] = Header(None),
) -> BackendClient:
    if not backend.check_api_key(apikey):
        raise HTTPException(status_code=401, detail="Invalid API key")
    return backend


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_context(
    request: Request,
    backend: BackendClient = Depends(require_api_key),
    authorization: Optional[str] = Header(None),
) -> RequestContext:
    token = _bearer_token(authorization)
    user = backend.auth.current_user(token)
    if token is None or user is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    clock = request.app.state.clock
    registry: ViewSessionRegistry = request.app.state.sessions
    return RequestContext(
        token=token,
        user=user,
        gateway=backend.gateway_for(user, clock=clock),
        view=registry.get_or_create(token, user),
    )


# Helpers


async def _remote(ctx: RequestContext, key: str, action: str, fn: Callable, *args):
    """
    Run a gateway call in a worker thread while holding the form's gate.

    Translates domain failures into HTTP errors; on any failure the caller's
    local state is left untouched.
    """
    try:
        async with ctx.view.gate.hold(key):
            return await asyncio.to_thread(fn, *args)
    except BusyError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except StaleTaskError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except HistoryWriteError as e:
        logger.error(f"Failed to {action}: {e}")
        raise HTTPException(status_code=502, detail=str(e))
    except RecordStoreError as e:
        logger.error(f"Failed to {action}: {e}")
        raise HTTPException(status_code=502, detail=f"Failed to {action}")


def _task_view(task: Task, now: Optional[datetime]) -> TaskView:
    return TaskView(
        task=task,
        due=classify_due_date(task.expected_completion_date, now),
        size_description=TASK_SIZE_DESCRIPTIONS.get(task.size) if task.size else None,
    )


def _list_response(view: ViewSession, now: Optional[datetime]) -> TaskListResponse:
    visible = view.state.visible_tasks
    groups: List[StatusGroup] = []
    for status in TaskStatus:
        members = [t for t in visible if t.status == status]
        if not members:
            continue
        groups.append(StatusGroup(
            status=status,
            display_name=STATUS_DISPLAY_NAMES[status],
            color=STATUS_COLORS[status],
            count=len(members),
            tasks=[_task_view(t, now) for t in members],
        ))
    return TaskListResponse(
        total_count=len(view.state.all_tasks),
        visible_count=len(visible),
        filters=view.state.filter_spec,
        sort=view.state.sort_spec.direction,
        groups=groups,
    )


def _now(request: Request) -> Optional[datetime]:
    clock = request.app.state.clock
    return clock() if clock else None


async def _ensure_loaded(ctx: RequestContext, refresh: bool = False) -> None:
    if refresh or not ctx.view.state.loaded:
        tasks = await _remote(ctx, "load", "fetch tasks", ctx.gateway.list_tasks)
        ctx.view.state.load(tasks)


# Health


@router.get("/healthz", response_model=HealthResponse)
async def health_check(request: Request, backend: BackendClient = Depends(get_backend)):
    """Service status including record store connectivity."""
    database_connected = True
    signed_in_sessions = 0
    try:
        backend.store.ping()
        signed_in_sessions = backend.auth.active_session_count()
    except RecordStoreError as e:
        logger.error(f"Database health check failed: {e}")
        database_connected = False

    return HealthResponse(
        status="healthy" if database_connected else "degraded",
        database_connected=database_connected,
        active_sessions=len(request.app.state.sessions),
        signed_in_sessions=signed_in_sessions,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


# Auth pages


@router.post("/api/auth/signup", response_model=SignUpResponse)
async def sign_up(body: SignUpRequest, backend: BackendClient = Depends(require_api_key)):
    """Register an account; it must confirm its email before signing in."""
    if body.password != body.confirm_password:
        raise HTTPException(status_code=400, detail="Passwords do not match")
    try:
        pending = await asyncio.to_thread(
            backend.auth.sign_up, body.email, body.password, backend.settings.signup_redirect_url
        )
    except AuthError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except RecordStoreError as e:
        logger.error(f"Sign up failed: {e}")
        raise HTTPException(status_code=502, detail="An error occurred during sign up")

    return SignUpResponse(
        message="Please check your email to verify your account before signing in.",
        user=UserResponse(id=pending.user.id, email=pending.user.email),
        confirmation_token=pending.confirmation_token,
        redirect_to=pending.redirect_to,
    )


@router.post("/api/auth/confirm", response_model=UserResponse)
async def confirm_email(body: ConfirmEmailRequest, backend: BackendClient = Depends(require_api_key)):
    try:
        user = await asyncio.to_thread(backend.auth.confirm_email, body.token)
    except AuthError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return UserResponse(id=user.id, email=user.email)


@router.post("/api/auth/signin", response_model=SessionResponse)
async def sign_in(body: SignInRequest, backend: BackendClient = Depends(require_api_key)):
    """Password sign-in; creates the profile row on first sign-in."""
    try:
        session = await asyncio.to_thread(backend.auth.sign_in_with_password, body.email, body.password)
    except AuthError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except RecordStoreError as e:
        logger.error(f"Sign in failed: {e}")
        raise HTTPException(status_code=502, detail="An error occurred during sign in")

    try:
        await asyncio.to_thread(backend.gateway_for(session.user).ensure_profile)
    except RecordStoreError as e:
        # Profile creation is retried on first task creation
        logger.error(f"Error creating profile for {session.user.id}: {e}")

    return SessionResponse(
        access_token=session.access_token,
        user=UserResponse(id=session.user.id, email=session.user.email),
    )


@router.post("/api/auth/signout")
async def sign_out(request: Request, ctx: RequestContext = Depends(get_context)):
    """Settings page sign-out: ends the session and tears down its view state."""
    backend: BackendClient = request.app.state.backend
    await asyncio.to_thread(backend.auth.sign_out, ctx.token)
    request.app.state.sessions.discard(ctx.token)
    return create_success_response("Signed out")


@router.get("/api/auth/user", response_model=UserResponse)
async def current_user(ctx: RequestContext = Depends(get_context)):
    return UserResponse(id=ctx.user.id, email=ctx.user.email)


# Task list page


@router.get("/api/tasks", response_model=TaskListResponse)
async def list_tasks(request: Request, refresh: bool = False, ctx: RequestContext = Depends(get_context)):
    """Visible tasks grouped by status under the session's filter and sort."""
    await _ensure_loaded(ctx, refresh)
    return _list_response(ctx.view, _now(request))


@router.put("/api/tasks/view", response_model=TaskListResponse)
async def update_view(request: Request, body: ViewUpdateRequest, ctx: RequestContext = Depends(get_context)):
    """Filter dropdown and sort menu: replace the filter and/or the sort direction."""
    await _ensure_loaded(ctx)
    if body.filters is not None:
        ctx.view.state.set_filter(body.filters)
    if body.sort is not None:
        ctx.view.state.set_sort(SortSpec(direction=body.sort))
    return _list_response(ctx.view, _now(request))


@router.delete("/api/tasks/view/filters/{dimension}/{value}", response_model=TaskListResponse)
async def remove_filter_value(
    request: Request, dimension: str, value: str, ctx: RequestContext = Depends(get_context)
):
    """Active-filter chip delete: drop one value from one dimension."""
    if dimension not in FILTER_DIMENSIONS:
        raise HTTPException(status_code=400, detail=f"Unknown filter dimension: {dimension}")
    await _ensure_loaded(ctx)
    ctx.view.state.set_filter(ctx.view.state.filter_spec.without(dimension, value))
    return _list_response(ctx.view, _now(request))


@router.post("/api/tasks", response_model=TaskMutationResponse, status_code=201)
async def create_task(draft: TaskDraft, ctx: RequestContext = Depends(get_context)):
    """Add-task form submit."""
    task = await _remote(ctx, "create", "create task", ctx.gateway.create_task, draft)
    ctx.view.state.upsert(task)
    return TaskMutationResponse(changed=True, task=task)


# Task detail page


@router.get("/api/tasks/{task_id}", response_model=TaskDetailResponse)
async def get_task_detail(request: Request, task_id: int, ctx: RequestContext = Depends(get_context)):
    """Task with its history (newest first) and comments (newest first)."""
    key = f"detail:{task_id}"
    task = await _remote(ctx, key, "fetch task", ctx.gateway.get_task, task_id)
    if task is None:
        raise HTTPException(status_code=404, detail="Task not found")
    history = await _remote(ctx, key, "fetch task history", ctx.gateway.get_history, task_id)
    comments = await _remote(ctx, key, "fetch comments", ctx.gateway.get_comments, task_id)
    return TaskDetailResponse(
        task=_task_view(task, _now(request)),
        history=[HistoryEntryView(record=r, description=r.describe()) for r in history],
        comments=comments,
    )


@router.patch("/api/tasks/{task_id}", response_model=TaskMutationResponse)
async def update_task_fields(task_id: int, body: FieldUpdateRequest, ctx: RequestContext = Depends(get_context)):
    """Edit form save."""
    task = await _remote(
        ctx, f"task:{task_id}", "update task", ctx.gateway.update_fields,
        task_id, body.patch, body.expected_updated_at,
    )
    if task is None:
        return TaskMutationResponse(changed=False)
    ctx.view.state.upsert(task)
    return TaskMutationResponse(changed=True, task=task)


@router.post("/api/tasks/{task_id}/status", response_model=TaskMutationResponse)
async def update_task_status(task_id: int, body: StatusUpdateRequest, ctx: RequestContext = Depends(get_context)):
    """Status menu / drag between status groups."""
    result = await _remote(
        ctx, f"task:{task_id}", "update task status", ctx.gateway.update_status, task_id, body.status
    )
    if result is None:
        return TaskMutationResponse(changed=False)
    ctx.view.state.upsert(result.task)
    return TaskMutationResponse(changed=result.changed, task=result.task)


@router.delete("/api/tasks/{task_id}", response_model=TaskMutationResponse)
async def delete_task(task_id: int, ctx: RequestContext = Depends(get_context)):
    """Immediate, irreversible delete."""
    removed = await _remote(ctx, f"task:{task_id}", "delete task", ctx.gateway.delete_task, task_id)
    if removed:
        ctx.view.state.remove(task_id)
    return TaskMutationResponse(changed=removed)


@router.post("/api/tasks/{task_id}/comments", response_model=CommentResponse, status_code=201)
async def add_comment(task_id: int, body: CommentRequest, ctx: RequestContext = Depends(get_context)):
    comment = await _remote(
        ctx, f"comment:{task_id}", "add comment", ctx.gateway.add_comment, task_id, body.content
    )
    if comment is None:
        raise HTTPException(status_code=404, detail="Task not found")
    return CommentResponse(comment=comment)


# Application factory


def create_app(settings: Settings, clock: Optional[Callable[[], datetime]] = None) -> FastAPI:
    """
    Build the FastAPI application around an explicitly constructed backend client.

    Args:
        settings: Validated service settings
        clock: Optional time source, used for timestamps and due-date windows

    Raises:
        ConfigurationError: when the backend secrets are missing
    """
    if not settings.backend_url or not settings.backend_anon_key:
        raise ConfigurationError("Backend URL and anonymous key are required")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        backend = BackendClient(settings)
        try:
            backend.open()
        except RecordStoreError as e:
            logger.error(f"Failed to open backend: {e}")
            raise
        app.state.backend = backend
        logger.info("Task Tracker API starting up...")
        logger.info(f"Backend configured: {bool(settings.backend_url)}, anon key configured: {bool(settings.backend_anon_key)}")

        yield

        app.state.sessions.close_all()
        backend.close()
        app.state.backend = None

    app = FastAPI(
        title="Task Tracker API",
        description="Personal task tracking with status workflow, history and comments",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.clock = clock
    app.state.backend = None
    app.state.sessions = ViewSessionRegistry(clock=clock)
    app.include_router(router)

    @app.exception_handler(Exception)
    async def general_exception_handler(request, exc):
        """Global exception handler for unhandled errors."""
        logger.error(f"Unhandled exception: {exc}")
        return JSONResponse(status_code=500, content=create_error_response("Internal server error", 500))

    return app

"""
Pydantic models for the Task Tracker domain and API request/response validation.

Provides the task, history and comment records stored in the
record store, the explicit filter/sort/patch structures used by the list
view, and standardized error/success response helpers.
"""

from typing import Optional, List, Dict, Any, Set
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator


class TaskStatus(str, Enum):
    """Workflow position of a task."""

    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class TaskSize(str, Enum):
    """Effort estimate buckets, smallest first."""

    XS = "XS"
    S = "S"
    M = "M"
    L = "L"
    XL = "XL"
    WEEK = "WEEK"
    MONTH = "MONTH"
    YEAR = "YEAR"


class TaskCategory(str, Enum):
    PERSONAL = "personal"
    OFFICE = "office"
    CAREER = "career"
    FAMILY = "family"


class HistoryAction(str, Enum):
    """Kinds of entries appended to the task history log."""

    CREATED = "created"
    STATUS_CHANGED = "status_changed"
    FIELD_UPDATED = "field_updated"
    COMMENT_ADDED = "comment_added"


class TimeFrame(str, Enum):
    TODAY = "today"
    WEEK = "week"
    MONTH = "month"


class SortDirection(str, Enum):
    """Ordering over expected_completion_date."""

    ASC = "asc"
    DESC = "desc"
    NONE = "none"


TASK_SIZE_DESCRIPTIONS: Dict[TaskSize, str] = {
    TaskSize.XS: "< 10 mins",
    TaskSize.S: "< 1 hour",
    TaskSize.M: "1-2 hours",
    TaskSize.L: "1 day",
    TaskSize.XL: "Few days",
    TaskSize.WEEK: "1 week",
    TaskSize.MONTH: "1 month",
    TaskSize.YEAR: "1 year",
}

STATUS_DISPLAY_NAMES: Dict[TaskStatus, str] = {
    TaskStatus.NOT_STARTED: "Not Started",
    TaskStatus.IN_PROGRESS: "In Progress",
    TaskStatus.COMPLETED: "Completed",
}

STATUS_COLORS: Dict[TaskStatus, str] = {
    TaskStatus.NOT_STARTED: "#ff9800",
    TaskStatus.IN_PROGRESS: "#2196f3",
    TaskStatus.COMPLETED: "#4caf50",
}


# Stored records


class Task(BaseModel):
    """A user-owned unit of work as stored in the ``tasks`` table."""

    id: int
    user_id: str
    title: str
    description: Optional[str] = None
    status: TaskStatus = TaskStatus.NOT_STARTED
    priority: Optional[TaskPriority] = None
    size: Optional[TaskSize] = None
    category: Optional[TaskCategory] = None
    expected_completion_date: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class TaskHistoryRecord(BaseModel):
    """Immutable audit-log entry describing one change to a task."""

    id: int
    task_id: int
    action: HistoryAction
    previous_status: Optional[TaskStatus] = None
    new_status: Optional[TaskStatus] = None
    field_name: Optional[str] = None
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    changed_at: datetime
    changed_by: str

    def describe(self) -> str:
        """Human-readable sentence for the detail page history list."""
        if self.action == HistoryAction.CREATED:
            return "Task created"
        if self.action == HistoryAction.STATUS_CHANGED:
            previous = STATUS_DISPLAY_NAMES[self.previous_status] if self.previous_status else "none"
            new = STATUS_DISPLAY_NAMES[self.new_status] if self.new_status else ""
            return f"Status changed from {previous} to {new}"
        if self.action == HistoryAction.FIELD_UPDATED:
            return f'{self.field_name} updated from "{self.old_value}" to "{self.new_value}"'
        return "Comment added"


class Comment(BaseModel):
    """Free-text note attached to a task."""

    id: int
    task_id: int
    content: str
    author: str
    created_at: datetime
    updated_at: datetime


# Explicit filter / sort / patch structures


class FilterSpec(BaseModel):
    """
    Acceptance criteria narrowing the visible task list.

    One optional value set per dimension. An absent or empty set places no
    constraint on that dimension; dimensions are combined with AND, values
    within a dimension with OR.
    """

    priority: Set[TaskPriority] = Field(default_factory=set)
    size: Set[TaskSize] = Field(default_factory=set)
    category: Set[TaskCategory] = Field(default_factory=set)
    time_frame: Set[TimeFrame] = Field(default_factory=set)

    def is_empty(self) -> bool:
        return not (self.priority or self.size or self.category or self.time_frame)

    def without(self, dimension: str, value: str) -> "FilterSpec":
        """Return a copy with one value removed from one dimension (chip delete)."""
        current = {v for v in getattr(self, dimension) if v.value != value}
        return self.model_copy(update={dimension: current})


class SortSpec(BaseModel):
    direction: SortDirection = SortDirection.NONE


class TaskDraft(BaseModel):
    """Add-task form payload. The store assigns id and timestamps."""

    title: str = Field(min_length=1, max_length=500, description="Task title")
    description: Optional[str] = Field(None, description="Optional free-text description")
    priority: Optional[TaskPriority] = TaskPriority.MEDIUM
    size: Optional[TaskSize] = TaskSize.M
    category: Optional[TaskCategory] = TaskCategory.PERSONAL
    expected_completion_date: Optional[datetime] = None

    @field_validator("title")
    @classmethod
    def validate_title(cls, v):
        """Reject whitespace-only titles."""
        if not v.strip():
            raise ValueError("Title cannot be empty")
        return v.strip()


class TaskPatch(BaseModel):
    """Edit-form payload with one optional field per editable column."""

    title: Optional[str] = Field(None, min_length=1, max_length=500)
    description: Optional[str] = None
    priority: Optional[TaskPriority] = None
    size: Optional[TaskSize] = None
    category: Optional[TaskCategory] = None
    expected_completion_date: Optional[datetime] = None

    @field_validator("title")
    @classmethod
    def validate_title(cls, v):
        """Validators do not run on the default, so None here was sent explicitly."""
        if v is None or not v.strip():
            raise ValueError("Title cannot be empty")
        return v.strip()

    def changed_fields(self) -> Dict[str, Any]:
        """Only the fields the caller explicitly set, including explicit nulls."""
        return {name: getattr(self, name) for name in self.model_fields_set}


# Request models


class StatusUpdateRequest(BaseModel):
    status: TaskStatus


class FieldUpdateRequest(BaseModel):
    """PATCH body: the field changes plus an optional optimistic-concurrency token."""

    patch: TaskPatch
    expected_updated_at: Optional[datetime] = Field(
        None, description="updated_at the edit form was opened with"
    )


class CommentRequest(BaseModel):
    content: str = Field(min_length=1, description="Comment text")

    @field_validator("content")
    @classmethod
    def validate_content(cls, v):
        if not v.strip():
            raise ValueError("Comment cannot be empty")
        return v


class ViewUpdateRequest(BaseModel):
    """Filter UI / sort menu payload. Omitted parts keep their current value."""

    filters: Optional[FilterSpec] = None
    sort: Optional[SortDirection] = None


class SignInRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320)
    password: str = Field(min_length=1)


class SignUpRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320)
    password: str
    confirm_password: str


class ConfirmEmailRequest(BaseModel):
    token: str = Field(min_length=1)


# Response models


class DueDateInfo(BaseModel):
    """Due-date proximity classification shown next to a task."""

    label: str
    color: str
    kind: str  # "overdue", "today" or "upcoming"


class TaskView(BaseModel):
    """A task as rendered on the list and detail pages."""

    task: Task
    due: Optional[DueDateInfo] = None
    size_description: Optional[str] = None


class StatusGroup(BaseModel):
    status: TaskStatus
    display_name: str
    color: str
    count: int
    tasks: List[TaskView]


class TaskListResponse(BaseModel):
    """List page projection: visible tasks grouped by status."""

    success: bool = True
    total_count: int
    visible_count: int
    filters: FilterSpec
    sort: SortDirection
    groups: List[StatusGroup]


class HistoryEntryView(BaseModel):
    record: TaskHistoryRecord
    description: str


class TaskDetailResponse(BaseModel):
    success: bool = True
    task: TaskView
    history: List[HistoryEntryView]
    comments: List[Comment]


class TaskMutationResponse(BaseModel):
    """Result of a remote write; ``changed`` is False when zero rows matched."""

    success: bool = True
    changed: bool
    task: Optional[Task] = None


class CommentResponse(BaseModel):
    success: bool = True
    comment: Comment


class UserResponse(BaseModel):
    id: str
    email: str


class SessionResponse(BaseModel):
    success: bool = True
    access_token: str
    user: UserResponse


class SignUpResponse(BaseModel):
    success: bool = True
    message: str
    user: UserResponse
    confirmation_token: str
    redirect_to: str


class HealthResponse(BaseModel):
    status: str
    database_connected: bool
    active_sessions: int
    signed_in_sessions: int
    timestamp: str


def create_error_response(
    message: str, code: Optional[int] = None, details: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """Create a standardized error response dictionary."""
    return {"success": False, "error": message, "code": code, "details": details}


def create_success_response(message: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Create a standardized success response dictionary."""
    return {"success": True, "message": message, "data": data}

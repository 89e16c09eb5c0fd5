from datetime import datetime, timezone
from enum import Enum
from typing import Literal, Optional

from pydantic import EmailStr, field_validator
from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy import Enum as SAEnum
from sqlmodel import Column, Field, SQLModel


def get_utc_now():
    """Helper function to get current UTC time with timezone"""
    return datetime.now(timezone.utc)


def to_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime to aware UTC; naive values are taken to be UTC already."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"


class TaskPriority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


PRIORITY_RANK = {TaskPriority.HIGH: 3, TaskPriority.MEDIUM: 2, TaskPriority.LOW: 1}


def _enum_column(enum_cls, default):
    return Column(
        SAEnum(
            enum_cls,
            values_callable=lambda members: [m.value for m in members],
            native_enum=False,
            length=20,
        ),
        nullable=False,
        default=default,
        index=True,
    )


def _owner_column():
    return Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)


def _created_column():
    return Column(DateTime(timezone=True), nullable=False, default=get_utc_now)


# ---------------------------------------------------------------------------
# Tables
# ---------------------------------------------------------------------------


class User(SQLModel, table=True):
    __tablename__ = "users"

    id: int | None = Field(default=None, primary_key=True)
    email: str = Field(sa_column=Column(String(255), unique=True, nullable=False, index=True))
    password: str = Field(sa_column=Column(String(255), nullable=False))
    name: str = Field(sa_column=Column(String(100), nullable=False))
    avatar: str | None = Field(default=None, sa_column=Column(String(500), nullable=True))
    created_at: datetime = Field(default_factory=get_utc_now, sa_column=_created_column())
    updated_at: datetime = Field(default_factory=get_utc_now, sa_column=_created_column())


class RefreshToken(SQLModel, table=True):
    __tablename__ = "refresh_tokens"

    id: int | None = Field(default=None, primary_key=True)
    token: str = Field(sa_column=Column(String(255), unique=True, nullable=False))
    user_id: int = Field(sa_column=_owner_column())
    created_at: datetime = Field(default_factory=get_utc_now, sa_column=_created_column())
    expires_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TokenBlacklist(SQLModel, table=True):
    __tablename__ = "token_blacklist"

    id: int | None = Field(default=None, primary_key=True)
    token: str = Field(sa_column=Column(String(1024), unique=True, nullable=False))
    created_at: datetime = Field(default_factory=get_utc_now, sa_column=_created_column())


class Tag(SQLModel, table=True):
    __tablename__ = "tags"
    __table_args__ = (UniqueConstraint("name", "user_id", name="uq_tags_name_user"),)

    id: int | None = Field(default=None, primary_key=True)
    name: str = Field(sa_column=Column(String(100), nullable=False))
    color: str = Field(sa_column=Column(String(32), nullable=False))
    user_id: int = Field(sa_column=_owner_column())
    created_at: datetime = Field(default_factory=get_utc_now, sa_column=_created_column())


class Task(SQLModel, table=True):
    """Database model"""

    __tablename__ = "tasks"

    id: int | None = Field(default=None, primary_key=True)
    title: str = Field(sa_column=Column(String(255), nullable=False))
    description: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    status: TaskStatus = Field(
        default=TaskStatus.PENDING, sa_column=_enum_column(TaskStatus, TaskStatus.PENDING)
    )
    priority: TaskPriority = Field(
        default=TaskPriority.MEDIUM, sa_column=_enum_column(TaskPriority, TaskPriority.MEDIUM)
    )
    due_date: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    completed_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    created_at: datetime = Field(default_factory=get_utc_now, sa_column=_created_column())
    updated_at: datetime = Field(default_factory=get_utc_now, sa_column=_created_column())
    order_index: int = Field(default=0, sa_column=Column(Integer, nullable=False, default=0))
    user_id: int = Field(sa_column=_owner_column())


class TaskTagLink(SQLModel, table=True):
    __tablename__ = "task_tags"
    __table_args__ = (UniqueConstraint("task_id", "tag_id", name="uq_task_tags_pair"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: int = Field(
        sa_column=Column(Integer, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    )
    tag_id: int = Field(
        sa_column=Column(Integer, ForeignKey("tags.id", ondelete="CASCADE"), nullable=False, index=True)
    )


class TaskHistory(SQLModel, table=True):
    __tablename__ = "task_history"

    id: int | None = Field(default=None, primary_key=True)
    task_id: int = Field(
        sa_column=Column(Integer, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    )
    action_type: str = Field(sa_column=Column(String(50), nullable=False))
    timestamp: datetime = Field(default_factory=get_utc_now, sa_column=_created_column())
    changes: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    operator: str | None = Field(default=None, sa_column=Column(String(100), nullable=True))


# ---------------------------------------------------------------------------
# Task schemas
# ---------------------------------------------------------------------------


class TaskCreate(SQLModel):
    """Schema for creating a task"""

    title: str = Field(max_length=255)
    description: str | None = None
    priority: TaskPriority = TaskPriority.MEDIUM
    tags: list[str] = Field(default_factory=list)
    due_date: datetime | None = None


class TaskUpdate(SQLModel):
    """Schema for updating a task - all fields optional, unset fields stay unchanged"""

    title: str | None = Field(default=None, max_length=255)
    description: str | None = None
    status: TaskStatus | None = None
    priority: TaskPriority | None = None
    tags: list[str] | None = None
    due_date: datetime | None = None


class TaskRead(SQLModel):
    """Schema for task responses"""

    id: int
    title: str
    description: str | None = None
    status: TaskStatus
    priority: TaskPriority
    tags: list[str] = Field(default_factory=list)
    due_date: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime
    order: int


class TaskPage(SQLModel):
    items: list[TaskRead]
    total: int
    page: int
    size: int


class DateRange(SQLModel):
    type: Literal["created", "updated", "completed"] = "created"
    start: datetime | None = None
    end: datetime | None = None


class TaskFilters(SQLModel):
    status: list[TaskStatus] | None = None
    priority: list[TaskPriority] | None = None
    tags: list[str] | None = None
    keyword: str | None = None
    date_range: DateRange | None = None


class TaskSort(SQLModel):
    field: Literal["priority", "createdAt", "updatedAt", "completedAt", "dueDate", "order"] = "order"
    order: Literal["asc", "desc"] = "asc"


class BatchOperation(SQLModel):
    action: str
    ids: list[int]
    data: TaskUpdate | None = None


class BatchResult(SQLModel):
    affected: int


class ReorderRequest(SQLModel):
    task_ids: list[int]


# ---------------------------------------------------------------------------
# Tag schemas
# ---------------------------------------------------------------------------


class TagCreate(SQLModel):
    name: str = Field(max_length=100)
    color: str = Field(max_length=32)


class TagUpdate(SQLModel):
    name: str | None = Field(default=None, max_length=100)
    color: str | None = Field(default=None, max_length=32)


class TagRead(SQLModel):
    id: int
    name: str
    color: str
    created_at: datetime

    model_config = {"from_attributes": True}

    @field_validator("created_at")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        return to_utc(value)


# ---------------------------------------------------------------------------
# Stats schemas
# ---------------------------------------------------------------------------


class TagCount(SQLModel):
    tag: str
    count: int


class TaskStats(SQLModel):
    total: int = 0
    pending: int = 0
    in_progress: int = 0
    completed: int = 0
    overdue: int = 0
    tag_stats: list[TagCount] = Field(default_factory=list)


class StatusBreakdown(SQLModel):
    total: int = 0
    pending: int = 0
    in_progress: int = 0
    completed: int = 0


class PriorityStats(SQLModel):
    high: StatusBreakdown = Field(default_factory=StatusBreakdown)
    medium: StatusBreakdown = Field(default_factory=StatusBreakdown)
    low: StatusBreakdown = Field(default_factory=StatusBreakdown)


class TimelineDay(SQLModel):
    date: str
    created: int
    completed: int


class CompletionRate(SQLModel):
    overall: float = 0
    this_week: float = 0
    this_month: float = 0
    average_completion_time: float = 0


# ---------------------------------------------------------------------------
# User / auth schemas
# ---------------------------------------------------------------------------


class UserCreate(SQLModel):
    email: EmailStr
    password: str
    name: str | None = Field(default=None, max_length=100)
    avatar: str | None = Field(default=None, max_length=500)


class UserUpdate(SQLModel):
    email: EmailStr | None = None
    name: str | None = Field(default=None, max_length=100)
    avatar: str | None = Field(default=None, max_length=500)


class UserRead(SQLModel):
    id: int
    email: str
    name: str
    avatar: str | None = None

    model_config = {"from_attributes": True}


class RegisterRequest(SQLModel):
    email: EmailStr
    password: str
    confirm_password: str
    name: str | None = Field(default=None, max_length=100)


class LoginRequest(SQLModel):
    email: str
    password: str


class RefreshRequest(SQLModel):
    refresh_token: str


class LogoutRequest(SQLModel):
    token: str | None = None
    refresh_token: str | None = None


class TokenPair(SQLModel):
    token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    refresh_expires_in: int


class AuthResponse(SQLModel):
    user: UserRead
    tokens: TokenPair

"""
Audit trail for task mutations.

Each change is a typed variant keyed by ``field``; the JSON form stored in
``task_history.changes`` is ``{"field", "oldValue", "newValue", "batchOperation"}``
and is produced only by :func:`dump_change` / read back by :func:`load_change`.
"""

from datetime import datetime
from enum import Enum
from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel
from typing_extensions import Annotated

from taskboard.models import TaskHistory, TaskPriority, TaskStatus, to_utc


class HistoryAction(str, Enum):
    CREATE = "create"
    UPDATE_TITLE = "update_title"
    UPDATE_DESCRIPTION = "update_description"
    UPDATE_STATUS = "update_status"
    UPDATE_PRIORITY = "update_priority"
    UPDATE_TAGS = "update_tags"
    UPDATE_DUE_DATE = "update_due_date"
    UPDATE_ORDER = "update_order"
    COMPLETE = "complete"
    DELETE = "delete"


class _Change(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    batch_operation: bool = False


class TextChange(_Change):
    field: Literal["title", "description"]
    old_value: Optional[str] = None
    new_value: Optional[str] = None


class StatusChange(_Change):
    field: Literal["status"] = "status"
    old_value: Optional[TaskStatus] = None
    new_value: TaskStatus


class PriorityChange(_Change):
    field: Literal["priority"] = "priority"
    old_value: Optional[TaskPriority] = None
    new_value: TaskPriority


class DueDateChange(_Change):
    field: Literal["due_date"] = "due_date"
    old_value: Optional[datetime] = None
    new_value: Optional[datetime] = None


class TagsChange(_Change):
    field: Literal["tags"] = "tags"
    old_value: list[str] = Field(default_factory=list)
    new_value: list[str] = Field(default_factory=list)


class OrderChange(_Change):
    field: Literal["order"] = "order"
    old_value: Optional[int] = None
    new_value: int


Change = Annotated[
    Union[TextChange, StatusChange, PriorityChange, DueDateChange, TagsChange, OrderChange],
    Field(discriminator="field"),
]

_change_adapter = TypeAdapter(Change)


def action_for(change) -> HistoryAction:
    """The action type recorded for a single-field change."""
    if isinstance(change, StatusChange) and change.new_value == TaskStatus.COMPLETED:
        return HistoryAction.COMPLETE
    return HistoryAction(f"update_{change.field}")


def dump_change(change) -> str:
    return change.model_dump_json(by_alias=True)


def load_change(raw: Optional[str]):
    if not raw:
        return None
    return _change_adapter.validate_json(raw)


def history_entry(task_id: int, action: HistoryAction, change=None, operator: Optional[str] = None) -> TaskHistory:
    return TaskHistory(
        task_id=task_id,
        action_type=action.value,
        changes=dump_change(change) if change is not None else None,
        operator=operator,
    )


class HistoryRead(BaseModel):
    id: int
    task_id: int
    action_type: str
    timestamp: datetime
    changes: Optional[Change] = None
    operator: Optional[str] = None

    @classmethod
    def from_row(cls, row: TaskHistory) -> "HistoryRead":
        return cls(
            id=row.id,
            task_id=row.task_id,
            action_type=row.action_type,
            timestamp=to_utc(row.timestamp),
            changes=load_change(row.changes),
            operator=row.operator,
        )

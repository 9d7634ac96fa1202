"""Data models for crew orchestrator."""

from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class Project:
    id: str
    name: str
    path: str
    default_branch: str = "main"
    slack_channel: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Worker:
    id: str
    name: str
    role: str
    is_active: bool = True
    model: str = "sonnet"
    permission_mode: str = "acceptEdits"
    allowed_tools: list[str] = field(default_factory=list)
    system_prompt: str = ""
    max_turns: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Task:
    id: str
    project_id: str
    title: str
    description: str = ""
    parsed_spec: str | None = None
    status: str = "created"
    priority: str = "medium"
    category: str | None = None
    assigned_worker_id: str | None = None
    parent_task_id: str | None = None
    branch: str | None = None
    result: str | None = None
    cost_usd: float | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None
    subtasks: list["Task"] = field(default_factory=list)


@dataclass
class TaskLog:
    id: int | None = None
    task_id: str = ""
    worker_id: str | None = None
    action: str = ""
    from_status: str | None = None
    to_status: str | None = None
    detail: str | None = None
    created_at: datetime | None = None


@dataclass
class Integration:
    project_id: str
    type: str
    config: dict = field(default_factory=dict)


@dataclass
class Memory:
    id: int | None = None
    key: str = ""
    value: str = ""
    category: str = "general"
    project_id: str | None = None
    worker_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

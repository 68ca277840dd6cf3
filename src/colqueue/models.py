from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Union

from .normalize import normalize_city_name, normalize_text

DEFAULT_YEAR = 2026
DEFAULT_PRIORITY = 10


class ItemStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    FAILED_PERMANENT = "failed_permanent"


@dataclass(frozen=True)
class CityMode:
    name: ClassVar[str] = "city"


@dataclass(frozen=True)
class BudgetMode:
    name: ClassVar[str] = "budget"


@dataclass(frozen=True)
class ComparisonMode:
    second_subject: str
    second_qualifier: str | None = None
    name: ClassVar[str] = "comparison"


Mode = Union[CityMode, BudgetMode, ComparisonMode]

MODE_NAMES = (CityMode.name, BudgetMode.name, ComparisonMode.name)


def mode_from_wire(
    name: str | None,
    second_subject: str | None = None,
    second_qualifier: str | None = None,
) -> Mode:
    name = (name or CityMode.name).strip().lower()
    if name == ComparisonMode.name:
        if not second_subject:
            raise ValueError("comparison mode requires a second subject")
        return ComparisonMode(second_subject=second_subject, second_qualifier=second_qualifier)
    if name == BudgetMode.name:
        return BudgetMode()
    if name == CityMode.name:
        return CityMode()
    raise ValueError(f"unknown mode: {name}")


def second_subject_of(mode: Mode) -> str | None:
    if isinstance(mode, ComparisonMode):
        return mode.second_subject
    return None


@dataclass(frozen=True)
class WorkItem:
    subject: str
    qualifier: str
    year: int
    mode: Mode
    priority: int
    status: ItemStatus
    retry_count: int
    added_at: str
    completed_at: str | None = None
    failed_at: str | None = None
    last_error: str | None = None

    @property
    def topic_key(self) -> tuple[str, str, int, str, str]:
        return (
            normalize_city_name(self.subject),
            normalize_text(self.qualifier),
            int(self.year),
            self.mode.name,
            normalize_city_name(second_subject_of(self.mode)),
        )

    @property
    def label(self) -> str:
        if isinstance(self.mode, ComparisonMode):
            return f"{self.subject} vs {self.mode.second_subject} ({self.year})"
        return f"{self.subject}, {self.qualifier} ({self.year})"


@dataclass(frozen=True)
class QueueLock:
    locked: bool = False
    locked_at: str | None = None
    locked_by: str | None = None
    ttl_minutes: int = 30


@dataclass
class QueueState:
    lock: QueueLock
    items: list[WorkItem] = field(default_factory=list)
    version: int = 0
    source: str = "empty"

    @property
    def degraded(self) -> bool:
        return self.source == "degraded"


@dataclass
class GeneratedArticle:
    title: str = ""
    seo_title: str = ""
    meta_description: str = ""
    excerpt: str = ""
    keywords: list[str] = field(default_factory=list)
    cost_data: dict[str, Any] | None = None
    data_policy: dict[str, Any] | None = None
    content: str = ""
    raw: str = ""


@dataclass(frozen=True)
class DuplicateVerdict:
    is_duplicate: bool
    exact: bool
    rationale: str
    match: dict[str, Any] | None = None
    similarity: float = 0.0
    recommendation: str = "proceed"


@dataclass(frozen=True)
class Published:
    slug: str
    document_id: str
    title: str


@dataclass(frozen=True)
class DuplicateSkipped:
    reason: str
    existing_slug: str | None = None


@dataclass(frozen=True)
class Failed:
    reason: str


GenerationOutcome = Union[Published, DuplicateSkipped, Failed]


def item_to_wire(item: WorkItem) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "city": item.subject,
        "country": item.qualifier,
        "year": item.year,
        "mode": item.mode.name,
        "comparisonCity": None,
        "priority": item.priority,
        "status": item.status.value,
        "retryCount": item.retry_count,
        "addedAt": item.added_at,
        "completedAt": item.completed_at,
        "failedAt": item.failed_at,
        "error": item.last_error,
    }
    if isinstance(item.mode, ComparisonMode):
        payload["comparisonCity"] = item.mode.second_subject
        if item.mode.second_qualifier:
            payload["comparisonCountry"] = item.mode.second_qualifier
    return payload


def item_from_wire(payload: dict[str, Any]) -> WorkItem:
    mode = mode_from_wire(
        payload.get("mode"),
        payload.get("comparisonCity"),
        payload.get("comparisonCountry"),
    )
    return WorkItem(
        subject=str(payload["city"]),
        qualifier=str(payload["country"]),
        year=int(payload.get("year") or DEFAULT_YEAR),
        mode=mode,
        priority=int(payload.get("priority") if payload.get("priority") is not None else DEFAULT_PRIORITY),
        status=ItemStatus(payload.get("status") or ItemStatus.PENDING.value),
        retry_count=int(payload.get("retryCount") or 0),
        added_at=str(payload["addedAt"]),
        completed_at=payload.get("completedAt"),
        failed_at=payload.get("failedAt"),
        last_error=payload.get("error"),
    )


def lock_to_wire(lock: QueueLock) -> dict[str, Any]:
    return {
        "locked": lock.locked,
        "lockedAt": lock.locked_at,
        "lockedBy": lock.locked_by,
        "lockTtlMinutes": lock.ttl_minutes,
    }


def lock_from_wire(payload: dict[str, Any] | None, default_ttl: int) -> QueueLock:
    payload = payload or {}
    ttl = payload.get("lockTtlMinutes")
    return QueueLock(
        locked=bool(payload.get("locked")),
        locked_at=payload.get("lockedAt"),
        locked_by=payload.get("lockedBy"),
        ttl_minutes=int(ttl) if ttl else default_ttl,
    )


def state_to_wire(state: QueueState) -> dict[str, Any]:
    return {
        "version": state.version,
        "lock": lock_to_wire(state.lock),
        "items": [item_to_wire(item) for item in state.items],
    }

"""Pydantic schemas shared across the API."""
from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .config import CONFIG


class Role(str, Enum):
    ADMIN = "admin"
    EDITOR = "editor"
    VIEWER = "viewer"


class Member(BaseModel):
    id: str
    family_id: str
    user_id: Optional[str] = None
    role: Role = Role.VIEWER
    is_mother: bool = False
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    avatar_character: Optional[str] = None
    notification_level: Optional[str] = None


class DisplayView(str, Enum):
    DASHBOARD = "dashboard"
    TUTORIAL = "tutorial"
    MESSAGE = "message"
    SCREENSAVER = "screensaver"


class DisplayControl(BaseModel):
    """The single shared "what should mom's screen show" row of a family."""

    family_id: str
    current_view: DisplayView = DisplayView.DASHBOARD
    content_id: Optional[str] = None
    content_data: Optional[Dict[str, Any]] = None
    triggered_by: Optional[str] = None
    version: Optional[int] = Field(
        default=None,
        description="Monotonic sequence bumped by update_mom_display on every write",
    )
    updated_at: Optional[datetime] = None


class MomMessage(BaseModel):
    id: str
    family_id: Optional[str] = None
    from_member_id: Optional[str] = None
    message: str
    is_urgent: bool = False
    is_read: bool = False
    read_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class TutorialContentType(str, Enum):
    VIDEO = "video"
    IMAGES = "images"


class TutorialStep(BaseModel):
    text: str
    image_url: Optional[str] = None


class TutorialCategory(BaseModel):
    id: str
    name: str
    icon: Optional[str] = None
    display_order: int = 0
    is_active: bool = True


class Tutorial(BaseModel):
    id: str
    title: str
    category_id: Optional[str] = None
    category: Optional[TutorialCategory] = None
    description: Optional[str] = None
    content_type: TutorialContentType = TutorialContentType.VIDEO
    video_url: Optional[str] = None
    steps: Optional[List[TutorialStep]] = None
    is_active: bool = True

    @property
    def embed_url(self) -> Optional[str]:
        if not self.video_url:
            return None
        return self.video_url.replace("watch?v=", "embed/")


class Photo(BaseModel):
    id: str
    url: str
    caption: Optional[str] = None
    is_active: bool = True
    display_order: int = 0


class DisplaySettings(BaseModel):
    family_id: Optional[str] = None
    screensaver_timeout: Optional[int] = Field(default=None, description="Idle seconds before screensaver")
    photo_interval: Optional[int] = Field(default=None, description="Seconds per screensaver photo")
    night_mode_start: Optional[str] = Field(default=None, description="HH:MM")
    night_mode_end: Optional[str] = Field(default=None, description="HH:MM")
    timezone: Optional[str] = None

    @property
    def idle_timeout_seconds(self) -> int:
        return self.screensaver_timeout or CONFIG.idle_timeout_seconds

    @property
    def photo_interval_seconds(self) -> int:
        return self.photo_interval or CONFIG.photo_interval_seconds

    @property
    def resolved_timezone(self) -> str:
        return self.timezone or CONFIG.default_timezone


class TimeWindow(str, Enum):
    MORNING = "morning"
    EVENING = "evening"


class Medication(BaseModel):
    id: str
    name: str
    dosage: Optional[str] = None
    instructions: Optional[str] = None
    time_window: TimeWindow
    is_active: bool = True


class DoseStatus(str, Enum):
    PENDING = "pending"
    DONE = "done"
    DONE_LATE = "done_late"
    MISSED = "missed"


COMPLETED_DOSE_STATUSES = {DoseStatus.DONE, DoseStatus.DONE_LATE}


class DoseLog(BaseModel):
    id: Optional[str] = None
    medication_id: str
    date: date
    time_window: TimeWindow
    status: DoseStatus = DoseStatus.PENDING
    performed_by: Optional[str] = None
    confirmed_at: Optional[datetime] = None


class TaskStatus(str, Enum):
    NEW = "new"
    IN_PROGRESS = "in_progress"
    WAITING = "waiting"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TaskPriority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class Task(BaseModel):
    id: str
    title: str
    status: TaskStatus = TaskStatus.NEW
    priority: TaskPriority = TaskPriority.MEDIUM
    owner_id: Optional[str] = None
    created_by: Optional[str] = None
    due_date: Optional[date] = None
    is_mother_related: bool = False
    created_at: Optional[datetime] = None


class ShoppingStatus(str, Enum):
    OPEN = "open"
    BOUGHT = "bought"


class ShoppingCategory(str, Enum):
    GROCERIES = "groceries"
    PHARMACY = "pharmacy"
    OTHER = "other"


class ShoppingItem(BaseModel):
    id: str
    name: str
    category: ShoppingCategory = ShoppingCategory.OTHER
    status: ShoppingStatus = ShoppingStatus.OPEN
    added_by: Optional[str] = None
    created_at: Optional[datetime] = None


class CalendarEvent(BaseModel):
    id: str
    title: str
    start_datetime: datetime
    end_datetime: Optional[datetime] = None
    description: Optional[str] = None
    visible_to_mother: bool = False


class RotationEntry(BaseModel):
    id: Optional[str] = None
    date: date
    assigned_member_id: Optional[str] = None
    assigned_member: Optional[Member] = None
    is_weekend: bool = False


class Holiday(BaseModel):
    id: Optional[str] = None
    date: date
    name_hebrew: Optional[str] = None
    name: Optional[str] = None
    is_yom_tov: bool = False

"""Templates, nodes and planning records shared by the controllers."""
import logging
from concurrent.futures import Future
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field, field_validator

from fleet_controller.config.settings import parse_instance_cap

logger = logging.getLogger(__name__)

DEFAULT_IDLE_TERMINATION_MINUTES = 30

WEEKDAYS = ["mon", "tue", "wed", "thu", "fri", "sat", "sun"]


class NodeStatus(str, Enum):
    """Connection status of a node as seen by the registry."""
    OFFLINE = "offline"
    ONLINE = "online"


class RequestState(str, Enum):
    """State of a provider-side spot request."""
    OPEN = "open"
    ACTIVE = "active"
    CLOSED = "closed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_pending(self) -> bool:
        """Open and active requests may still turn into a node."""
        return self in (RequestState.OPEN, RequestState.ACTIVE)


class RetentionDecision(str, Enum):
    """Outcome of an idle check."""
    KEEP = "keep"
    TERMINATE = "terminate"


class PrimedWindow(BaseModel):
    """Time-of-day range during which primed instances are maintained."""
    start_time: str = Field("", description="Window start as HH:MM; empty with end_time means always")
    end_time: str = Field("", description="Window end as HH:MM; earlier than start wraps past midnight")
    days: Optional[List[str]] = Field(None, description="Active weekdays (mon..sun); None means every day")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "start_time": "22:00",
                "end_time": "06:00",
                "days": ["mon", "tue", "wed", "thu", "fri"],
            }
        }
    )

    @field_validator('start_time', 'end_time', mode='before')
    @classmethod
    def strip_time(cls, v):
        return "" if v is None else str(v).strip()

    @field_validator('days', mode='before')
    @classmethod
    def normalize_days(cls, v):
        """Accept weekday names or numbers (0 = Monday) and store short names."""
        if v is None:
            return None
        days = []
        for day in v:
            if isinstance(day, int):
                if not 0 <= day < 7:
                    raise ValueError(f"Weekday number out of range: {day}")
                days.append(WEEKDAYS[day])
                continue
            short = str(day).strip().lower()[:3]
            if short not in WEEKDAYS:
                raise ValueError(f"Unknown weekday: {day!r}")
            days.append(short)
        return days

    @property
    def is_unbounded(self) -> bool:
        return self.start_time == "" and self.end_time == ""


class Template(BaseModel):
    """Configuration for one kind of node."""
    name: str = Field(..., min_length=1, description="Template description, used for manual provisioning")
    image_id: str = Field(..., min_length=1, description="Machine image (AMI) to launch")
    instance_type: str = Field("t3.medium", description="EC2 instance type")
    num_executors: int = Field(1, ge=1, description="Executors contributed by one instance")
    instance_cap: int = Field(parse_instance_cap(""), ge=0, description="Per-image instance cap")
    num_primed_instances: int = Field(0, ge=0, description="Idle instances to keep ready")
    primed_windows: List[PrimedWindow] = Field(default_factory=list)
    label_string: str = Field("", description="Space separated labels served by this template")
    idle_termination_minutes: int = Field(0, ge=0, description="Idle minutes before termination; 0 means never")

    # Launch parameters
    spot: bool = Field(False, description="Request spot capacity instead of on-demand")
    spot_max_price: Optional[str] = None
    key_name: Optional[str] = None
    security_group_ids: List[str] = Field(default_factory=list)
    subnet_id: Optional[str] = None
    tags: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "name": "linux-builder",
                "image_id": "ami-0123456789abcdef0",
                "num_executors": 2,
                "instance_cap": 10,
                "num_primed_instances": 1,
                "primed_windows": [{"start_time": "08:00", "end_time": "18:00"}],
                "label_string": "linux docker",
                "idle_termination_minutes": 30,
            }
        }
    )

    @field_validator('instance_cap', mode='before')
    @classmethod
    def parse_cap(cls, v):
        if v is None or isinstance(v, str):
            return parse_instance_cap(v)
        return v

    @field_validator('idle_termination_minutes', mode='before')
    @classmethod
    def parse_idle_termination(cls, v):
        """Empty means never terminate; a malformed value falls back to the default."""
        if v is None:
            return 0
        if isinstance(v, str):
            if v.strip() == "":
                return 0
            try:
                return int(v.strip())
            except ValueError:
                logger.info(f"Malformed idle termination value: {v!r}, using {DEFAULT_IDLE_TERMINATION_MINUTES}")
                return DEFAULT_IDLE_TERMINATION_MINUTES
        return v

    @field_validator('label_string', mode='before')
    @classmethod
    def normalize_labels(cls, v):
        return " ".join(str(v or "").split())

    @property
    def labels(self) -> Set[str]:
        return set(self.label_string.split())

    def matches(self, label: Optional[str]) -> bool:
        """True when the label is this template's label string or one of its labels."""
        if label is None:
            return True
        label = label.strip()
        return label == self.label_string or label in self.labels


@dataclass
class LaunchHandle:
    """What the provider returns for a launch request."""
    instance_id: str
    image_id: str
    spot_request_id: Optional[str] = None


@dataclass
class Node:
    """A launched instance known to the node registry."""
    name: str
    instance_id: str
    image_id: str
    label_string: str
    template_name: str
    num_executors: int
    spot_request_id: Optional[str] = None
    status: NodeStatus = NodeStatus.OFFLINE
    busy_executors: int = 0
    idle_since: Optional[datetime] = None

    @classmethod
    def from_launch(cls, template: Template, handle: LaunchHandle) -> "Node":
        return cls(
            name=f"{template.name} ({handle.instance_id or handle.spot_request_id})",
            instance_id=handle.instance_id,
            image_id=handle.image_id,
            label_string=template.label_string,
            template_name=template.name,
            num_executors=template.num_executors,
            spot_request_id=handle.spot_request_id,
        )

    @property
    def is_online(self) -> bool:
        return self.status == NodeStatus.ONLINE

    @property
    def is_idle(self) -> bool:
        """Every executor is idle."""
        return self.busy_executors == 0

    @property
    def has_idle_executor(self) -> bool:
        return self.busy_executors < self.num_executors

    def mark_online(self, now: Optional[datetime] = None) -> None:
        self.status = NodeStatus.ONLINE
        if self.is_idle and self.idle_since is None:
            self.idle_since = now or datetime.now()

    def mark_offline(self) -> None:
        self.status = NodeStatus.OFFLINE

    def set_busy_executors(self, busy: int, now: Optional[datetime] = None) -> None:
        """Record executor usage; the idle clock restarts whenever the node drains."""
        busy = max(0, min(busy, self.num_executors))
        if busy == 0 and self.busy_executors > 0:
            self.idle_since = now or datetime.now()
        elif busy > 0:
            self.idle_since = None
        self.busy_executors = busy


@dataclass
class PlannedUnit:
    """One accepted provisioning decision."""
    display_name: str
    num_executors: int
    future: Future

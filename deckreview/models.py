"""Dataclasses used throughout the analysis pipeline."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

JOB_PENDING = "pending"
JOB_PROCESSING = "processing"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"

JOB_STATUSES = (JOB_PENDING, JOB_PROCESSING, JOB_COMPLETED, JOB_FAILED)
TERMINAL_JOB_STATUSES = frozenset({JOB_COMPLETED, JOB_FAILED})

# Allowed predecessors for each target status.
JOB_TRANSITIONS: Dict[str, tuple] = {
    JOB_PROCESSING: (JOB_PENDING,),
    JOB_COMPLETED: (JOB_PROCESSING,),
    JOB_FAILED: (JOB_PENDING, JOB_PROCESSING),
}

UPLOAD_EXTRACTING = "extracting"
UPLOAD_UPLOADING = "uploading"
UPLOAD_ANALYZING = "analyzing"
UPLOAD_FINALIZING = "finalizing"
UPLOAD_COMPLETED = "completed"
UPLOAD_FAILED = "failed"

UPLOAD_STATUSES = (
    UPLOAD_EXTRACTING,
    UPLOAD_UPLOADING,
    UPLOAD_ANALYZING,
    UPLOAD_FINALIZING,
    UPLOAD_COMPLETED,
    UPLOAD_FAILED,
)
TERMINAL_UPLOAD_STATUSES = frozenset({UPLOAD_COMPLETED, UPLOAD_FAILED})

TX_DEDUCTION = "deduction"
TX_PURCHASE = "purchase"
TX_REFUND = "refund"
TX_SUBSCRIPTION_RENEWAL = "subscription_renewal"


@dataclass
class Job:
    id: str
    owner_id: str
    source_file_name: str
    source_file_size: int
    page_count: int
    status: str
    error_message: Optional[str]
    result_payload: Optional[Dict[str, Any]]
    analyzed_page_count: int
    created_at: str
    updated_at: str

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES


@dataclass
class PageImage:
    page_number: int
    data: bytes
    width: int
    height: int


@dataclass
class PageAsset:
    job_id: str
    page_number: int
    storage_path: str
    signed_url: str
    width: Optional[int] = None
    height: Optional[int] = None


@dataclass
class PageResult:
    job_id: str
    page_number: int
    title: str
    content: str
    score: Optional[int]
    feedback: str
    image_url: Optional[str]
    succeeded: bool


@dataclass
class CreditAccount:
    owner_id: str
    credits_balance: int
    subscription_credits: int
    purchased_credits: int
    updated_at: str


@dataclass
class CreditTransaction:
    id: int
    owner_id: str
    amount: int
    transaction_type: str
    description: str
    balance_after: int
    metadata: Dict[str, Any]
    created_at: str


@dataclass
class PersistedUploadState:
    """Client-side checkpoint of one in-flight submission."""

    job_id: str
    owner_id: str
    source_file_name: str
    source_file_size: int
    page_count: int
    status: str = UPLOAD_EXTRACTING
    uploaded_page_urls: List[str] = field(default_factory=list)
    uploaded_page_count: int = 0
    analyzed_page_count: int = 0
    last_touched_at: float = 0.0
    source_path: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PersistedUploadState":
        known = {name for name in cls.__dataclass_fields__}
        return cls(**{key: value for key, value in data.items() if key in known})

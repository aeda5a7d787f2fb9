"""
Core data models for the CaseFlow sync client.

Cases, queued mutations and list/sync results. Everything that is sent to
the service or written to local storage goes through to_dict()/from_dict(),
which use the service's camelCase keys.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Dict, Any
from enum import Enum
import uuid


def utc_now_iso() -> str:
    """Current UTC time in the service's timestamp format."""
    return datetime.now(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse a service timestamp; None when absent or unreadable."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except (TypeError, ValueError):
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class CaseStatus(str, Enum):
    """Workflow status of a case."""
    ASSIGNED = "Assigned"
    IN_PROGRESS = "In Progress"
    COMPLETED = "Completed"
    SUBMITTED = "submitted"


class SubmissionStatus(str, Enum):
    """Submission state machine; SUCCESS is terminal."""
    PENDING = "pending"
    SUBMITTING = "submitting"
    SUCCESS = "success"
    FAILED = "failed"


class VerificationType(str, Enum):
    RESIDENCE = "Residence"
    RESIDENCE_CUM_OFFICE = "Residence-cum-office"
    OFFICE = "Office"
    BUSINESS = "Business"
    BUILDER = "Builder"
    NOC = "NOC"
    CONNECTOR = "DSA/DST & Connector"
    PROPERTY_APF = "Property (APF)"
    PROPERTY_INDIVIDUAL = "Property (Individual)"


class VerificationOutcome(str, Enum):
    """Current outcome values. Older values are handled by outcome_migration."""
    POSITIVE_AND_DOOR_LOCKED = "Positive & Door Locked"
    SHIFTED_AND_DOOR_LOCKED = "Shifted & Door Lock"
    NSP_AND_DOOR_LOCKED = "NSP & Door Lock"
    ERT = "ERT"
    UNTRACEABLE = "Untraceable"


class RevokeReason(str, Enum):
    NOT_MY_AREA = "Not my area"
    WRONG_PINCODE = "Wrong pincode"
    NOT_WORKING = "Not working"
    LEFT_AREA = "Left area"
    WRONG_ADDRESS = "Wrong/incomplete address"


class SyncAction(str, Enum):
    """Remote operation a queued mutation replays."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class User:
    """Signed-in field agent."""
    id: str
    name: str
    username: Optional[str] = None
    employee_id: Optional[str] = None
    designation: Optional[str] = None
    department: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    profile_photo_url: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    _KEYS = {
        'id': 'id',
        'name': 'name',
        'username': 'username',
        'employeeId': 'employee_id',
        'designation': 'designation',
        'department': 'department',
        'phone': 'phone',
        'email': 'email',
        'profilePhotoUrl': 'profile_photo_url',
    }

    def __post_init__(self):
        if not self.id:
            raise ValueError("User ID cannot be empty")

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.extra)
        for key, attr in self._KEYS.items():
            value = getattr(self, attr)
            if value is not None:
                data[key] = value
        return data

    def merged(self, changes: Dict[str, Any]) -> 'User':
        """Return a copy with camelCase `changes` applied."""
        data = self.to_dict()
        data.update(changes)
        data['id'] = self.id
        return User.from_dict(data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'User':
        kwargs = {attr: data.get(key) for key, attr in cls._KEYS.items()}
        kwargs['id'] = str(kwargs['id']) if kwargs['id'] is not None else ''
        kwargs['name'] = kwargs['name'] or ''
        kwargs['extra'] = {k: v for k, v in data.items() if k not in cls._KEYS}
        return cls(**kwargs)


# camelCase key -> attribute for the fields the sync layer itself reads or writes
CASE_CORE_FIELDS = {
    'id': 'id',
    'status': 'status',
    'isSaved': 'is_saved',
    'verificationOutcome': 'verification_outcome',
    'verificationType': 'verification_type',
    'submissionStatus': 'submission_status',
    'submissionError': 'submission_error',
    'lastSubmissionAttempt': 'last_submission_attempt',
    'createdAt': 'created_at',
    'updatedAt': 'updated_at',
    'inProgressAt': 'in_progress_at',
    'savedAt': 'saved_at',
    'completedAt': 'completed_at',
    'notes': 'notes',
    'priority': 'priority',
}


@dataclass
class Case:
    """
    A verification case.

    Only the fields the sync layer reasons about are attributes. Everything
    else (title, customer, address, report payloads, attachments) is kept
    verbatim in `fields` so it round-trips untouched.
    """
    id: str
    status: str = CaseStatus.ASSIGNED.value
    is_saved: bool = False
    verification_outcome: Optional[str] = None
    verification_type: Optional[str] = None
    submission_status: Optional[str] = None
    submission_error: Optional[str] = None
    last_submission_attempt: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    in_progress_at: Optional[str] = None
    saved_at: Optional[str] = None
    completed_at: Optional[str] = None
    notes: Optional[str] = None
    priority: Optional[int] = None
    fields: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.id:
            raise ValueError("Case ID cannot be empty")

    @property
    def effective_submission_status(self) -> str:
        """A missing submission status means the case was never submitted."""
        return self.submission_status or SubmissionStatus.PENDING.value

    @property
    def title(self) -> str:
        return self.fields.get('title') or ''

    def get(self, name: str, default: Any = None) -> Any:
        """Read a field by its camelCase name, core or free-form."""
        attr = CASE_CORE_FIELDS.get(name)
        if attr is not None:
            return getattr(self, attr)
        return self.fields.get(name, default)

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.fields)
        for key, attr in CASE_CORE_FIELDS.items():
            value = getattr(self, attr)
            if value is not None or key in ('verificationOutcome',):
                data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Case':
        if 'id' not in data or data['id'] in (None, ''):
            raise ValueError("Case record has no id")

        kwargs = {}
        for key, attr in CASE_CORE_FIELDS.items():
            if key in data:
                kwargs[attr] = data[key]
        kwargs['id'] = str(kwargs['id'])
        if kwargs.get('status') is None:
            kwargs.pop('status', None)
        kwargs['is_saved'] = bool(kwargs.get('is_saved', False))
        kwargs['fields'] = {k: v for k, v in data.items() if k not in CASE_CORE_FIELDS}
        return cls(**kwargs)

    def merged(self, patch: Dict[str, Any]) -> 'Case':
        """Shallow-merge a camelCase patch; returns a new Case."""
        data = self.to_dict()
        data.update(patch)
        data['id'] = self.id
        return Case.from_dict(data)


@dataclass
class SyncQueueItem:
    """A mutation recorded while offline, replayed by the next sync."""
    case_id: str
    action: SyncAction
    payload: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = field(default_factory=utc_now_iso)
    retry_count: int = 0

    def __post_init__(self):
        if not self.case_id:
            raise ValueError("Queued mutation needs a case ID")
        if not isinstance(self.action, SyncAction):
            self.action = SyncAction(self.action)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'caseId': self.case_id,
            'action': self.action.value,
            'payload': self.payload,
            'timestamp': self.timestamp,
            'retryCount': self.retry_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SyncQueueItem':
        return cls(
            id=data['id'],
            case_id=data['caseId'],
            action=SyncAction(data['action']),
            payload=data.get('payload') or {},
            timestamp=data.get('timestamp') or utc_now_iso(),
            retry_count=int(data.get('retryCount', 0))
        )


@dataclass
class CaseQuery:
    """Filters and paging for case listing."""
    page: int = 1
    limit: int = 20
    status: Optional[str] = None
    search: Optional[str] = None
    verification_type: Optional[str] = None
    is_saved: Optional[bool] = None
    sort_by: str = 'updatedAt'
    sort_order: str = 'desc'

    def __post_init__(self):
        if self.page < 1:
            raise ValueError("Page must be 1 or greater")
        if self.limit < 1:
            raise ValueError("Limit must be 1 or greater")
        if self.sort_order not in ('asc', 'desc'):
            raise ValueError("Sort order must be 'asc' or 'desc'")

    def to_params(self) -> Dict[str, str]:
        """Query-string parameters for GET /cases."""
        params = {
            'page': str(self.page),
            'limit': str(self.limit),
            'sortBy': self.sort_by,
            'sortOrder': self.sort_order,
        }
        if self.status:
            params['status'] = str(self.status)
        if self.search:
            params['search'] = self.search
        if self.verification_type:
            params['verificationType'] = str(self.verification_type)
        if self.is_saved is not None:
            params['isSaved'] = 'true' if self.is_saved else 'false'
        return params


@dataclass
class Pagination:
    page: int
    limit: int
    total: int
    total_pages: int

    def to_dict(self) -> Dict[str, int]:
        return {'page': self.page, 'limit': self.limit, 'total': self.total, 'totalPages': self.total_pages}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Pagination':
        return cls(
            page=int(data.get('page', 1)),
            limit=int(data.get('limit', 0)),
            total=int(data.get('total', 0)),
            total_pages=int(data.get('totalPages', 0))
        )


@dataclass
class CaseListResponse:
    cases: List[Case]
    pagination: Pagination
    source: str = 'remote'  # 'remote' or 'local'


@dataclass
class SubmissionResult:
    success: bool
    error: Optional[str] = None


@dataclass
class SyncResult:
    success: bool
    synced_count: int = 0
    errors: List[str] = field(default_factory=list)

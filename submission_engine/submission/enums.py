"""
Submission Framework Canonical Enums.

Closed vocabularies for submission statuses, reasons, action-needed types,
error types, events, triggers and artifacts. These values are a wire contract:
the database enum types in ``submission_engine.db.models`` are generated from
them, so adding a value here adds it to the schema as well.
"""

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional, Type, TypeVar

E = TypeVar("E", bound=Enum)


class SubmissionStatus(str, Enum):
    """Lifecycle status of a submission run (17 states)."""

    # Pre-submission
    QUEUED = "queued"
    DEFERRED = "deferred"
    PAUSED = "paused"
    IN_PROGRESS = "in_progress"

    # Pending resolution
    ACTION_NEEDED = "action_needed"
    SUBMITTED = "submitted"
    AWAITING_REVIEW = "awaiting_review"
    APPROVED = "approved"
    NEEDS_CHANGES = "needs_changes"

    # Resolved
    LIVE = "live"
    FAILED = "failed"
    REJECTED = "rejected"
    BLOCKED = "blocked"
    DISABLED = "disabled"
    EXPIRED = "expired"
    ALREADY_LISTED = "already_listed"
    CANCELLED = "cancelled"


class TriggeredBy(str, Enum):
    """Who or what caused a transition or event."""

    WORKER = "worker"
    USER = "user"
    ADMIN = "admin"
    WEBHOOK = "webhook"
    SCHEDULER = "scheduler"
    SYSTEM = "system"


class ActionNeededType(str, Enum):
    """Kind of human intervention an ACTION_NEEDED run is waiting on."""

    CAPTCHA = "captcha"
    REAUTH = "reauth"
    MFA = "mfa"
    LOGIN_REQUIRED = "login_required"
    MANUAL_REVIEW = "manual_review"
    CONTENT_FIX = "content_fix"
    MISSING_FIELDS = "missing_fields"
    CONSENT_REQUIRED = "consent_required"
    PAYMENT_REQUIRED = "payment_required"
    VERIFICATION = "verification"
    CLAIM_LISTING = "claim_listing"
    OTHER = "other"


class ErrorType(str, Enum):
    """Classification of the last error a run hit."""

    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    TEMPORARY_FAILURE = "temporary_failure"
    VALIDATION_ERROR = "validation_error"
    AUTH_ERROR = "auth_error"
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    DUPLICATE = "duplicate"
    TOS_VIOLATION = "tos_violation"
    INVALID_PAYLOAD = "invalid_payload"
    UNSUPPORTED = "unsupported"
    CONNECTOR_ERROR = "connector_error"
    CONFIG_ERROR = "config_error"
    LOCK_ERROR = "lock_error"
    REDACTION_ERROR = "redaction_error"
    UNKNOWN = "unknown"


class StatusReason(str, Enum):
    """Closed-vocabulary explanation attached to a transition."""

    # Scheduling
    RATE_LIMITED = "rate_limited"
    BACKOFF = "backoff"
    SCHEDULED = "scheduled"

    # Validation
    VALIDATION_FAILED = "validation_failed"
    MISSING_REQUIRED_FIELDS = "missing_required_fields"
    INVALID_DATA = "invalid_data"

    # Duplicate
    DUPLICATE_FOUND = "duplicate_found"
    ALREADY_EXISTS = "already_exists"

    # Auth
    AUTH_EXPIRED = "auth_expired"
    AUTH_FAILED = "auth_failed"
    REAUTH_REQUIRED = "reauth_required"

    # Action needed
    CAPTCHA_REQUIRED = "captcha_required"
    MFA_REQUIRED = "mfa_required"
    LOGIN_REQUIRED = "login_required"
    CONSENT_REQUIRED = "consent_required"
    PAYMENT_REQUIRED = "payment_required"
    VERIFICATION_REQUIRED = "verification_required"
    MANUAL_REVIEW_REQUIRED = "manual_review_required"
    CONTENT_FIX_REQUIRED = "content_fix_required"
    CLAIM_LISTING_REQUIRED = "claim_listing_required"

    # Directory response
    DIRECTORY_APPROVED = "directory_approved"
    DIRECTORY_REJECTED = "directory_rejected"
    DIRECTORY_CHANGES_REQUESTED = "directory_changes_requested"
    DIRECTORY_BLOCKED = "directory_blocked"

    # Technical
    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    SERVER_ERROR = "server_error"
    CONNECTOR_ERROR = "connector_error"

    # Circuit breaker
    CIRCUIT_OPEN = "circuit_open"
    CIRCUIT_CLOSED = "circuit_closed"

    # User/Admin actions
    MANUAL_PAUSE = "manual_pause"
    MANUAL_RESUME = "manual_resume"
    MANUAL_CANCEL = "manual_cancel"
    MANUAL_RE_ENABLE = "manual_re_enable"
    CHANGES_ACKNOWLEDGED = "changes_acknowledged"

    # Success
    SUBMISSION_ACCEPTED = "submission_accepted"
    LIVE_VERIFIED = "live_verified"

    # Expiry
    ACTION_DEADLINE_EXPIRED = "action_deadline_expired"
    REVIEW_WINDOW_EXPIRED = "review_window_expired"

    # Lock
    LOCK_ACQUIRED = "lock_acquired"
    LOCK_RELEASED = "lock_released"
    LOCK_EXPIRED = "lock_expired"
    LOCK_CONTENTION = "lock_contention"


class SubmissionEventType(str, Enum):
    """Types of entries in the append-only submission event log."""

    STATUS_CHANGE = "status_change"
    CREATED = "created"
    STARTED = "started"
    COMPLETED = "completed"
    CONNECTOR_CALLED = "connector_called"
    CONNECTOR_RESPONSE = "connector_response"
    CONNECTOR_ERROR = "connector_error"
    VALIDATION_STARTED = "validation_started"
    VALIDATION_PASSED = "validation_passed"
    VALIDATION_FAILED = "validation_failed"
    FIELD_MAPPING_COMPLETED = "field_mapping_completed"
    SUBMITTED = "submitted"
    DUPLICATE_FOUND = "duplicate_found"
    EXTERNAL_ID_RECEIVED = "external_id_received"
    STATUS_CHECK_STARTED = "status_check_started"
    STATUS_CHECK_COMPLETED = "status_check_completed"
    WEBHOOK_RECEIVED = "webhook_received"
    LIVE_VERIFICATION_STARTED = "live_verification_started"
    LIVE_VERIFIED = "live_verified"
    LIVE_VERIFICATION_FAILED = "live_verification_failed"
    ARTIFACT_STORED = "artifact_stored"
    ARTIFACT_REDACTED = "artifact_redacted"
    ARTIFACT_REDACTION_FAILED = "artifact_redaction_failed"
    RETRY_SCHEDULED = "retry_scheduled"
    RETRY_ATTEMPTED = "retry_attempted"
    RETRY_BLOCKED_NO_CHANGES = "retry_blocked_no_changes"
    RATE_LIMITED = "rate_limited"
    BACKOFF_APPLIED = "backoff_applied"
    CIRCUIT_OPENED = "circuit_opened"
    CIRCUIT_CLOSED = "circuit_closed"
    CIRCUIT_HALF_OPEN = "circuit_half_open"
    LOCK_ACQUIRED = "lock_acquired"
    LOCK_RELEASED = "lock_released"
    LOCK_EXPIRED = "lock_expired"
    LOCK_CONTENTION = "lock_contention"
    ACTION_REQUIRED = "action_required"
    ACTION_RESOLVED = "action_resolved"
    ACTION_EXPIRED = "action_expired"
    USER_PAUSED = "user_paused"
    USER_RESUMED = "user_resumed"
    USER_CANCELLED = "user_cancelled"
    USER_CHANGES_ACKNOWLEDGED = "user_changes_acknowledged"
    MANUAL_RE_ENABLED = "manual_re_enabled"
    NEW_RUN_CREATED = "new_run_created"
    ERROR_OCCURRED = "error_occurred"
    AUTH_FAILED = "auth_failed"
    TIMEOUT = "timeout"


class ArtifactType(str, Enum):
    """Evidence objects stored against a run or a target."""

    REQUEST_PAYLOAD = "request_payload"
    RESPONSE_PAYLOAD = "response_payload"
    STATUS_CHECK_REQUEST = "status_check_request"
    STATUS_CHECK_RESPONSE = "status_check_response"
    WEBHOOK_PAYLOAD = "webhook_payload"
    PAYLOAD_MAPPING_RESULT = "payload_mapping_result"
    SCREENSHOT_PRE = "screenshot_pre"
    SCREENSHOT_POST = "screenshot_post"
    SCREENSHOT_ERROR = "screenshot_error"
    SCREENSHOT_LISTING = "screenshot_listing"
    CONFIRMATION_EMAIL = "confirmation_email"
    SUBMISSION_RECEIPT = "submission_receipt"
    EXTERNAL_ID = "external_id"
    LISTING_URL = "listing_url"
    DUPLICATE_CHECK = "duplicate_check"
    VALIDATION_RESULT = "validation_result"
    LIVE_VERIFICATION_RESULT = "live_verification_result"
    ERROR_LOG = "error_log"
    RETRY_LOG = "retry_log"
    RAW_STATUS = "raw_status"
    SUBMISSION_PACKET = "submission_packet"
    INSTRUCTIONS = "instructions"


class ArtifactLink(str, Enum):
    """Which entity an artifact type hangs off."""

    RUN = "run"
    TARGET = "target"


class ArtifactRedactionMode(str, Enum):
    """How sensitive content is handled when an artifact is stored."""

    STRICT_FAIL_ON_LEAK = "strict_fail_on_leak"
    BEST_EFFORT = "best_effort"
    SKIP = "skip"


class ConnectorResultStatus(str, Enum):
    """Outcome a connector reports for one submission attempt."""

    SUBMITTED = "submitted"
    ACTION_NEEDED = "action_needed"
    ALREADY_LISTED = "already_listed"
    ERROR = "error"


class SubmissionMode(str, Enum):
    """How a target is submitted to its directory."""

    API = "api"
    FORM = "form"
    BROWSER = "browser"
    ASSISTED = "assisted"
    MANUAL = "manual"


class LiveVerificationMethod(str, Enum):
    """How a live listing was confirmed."""

    API_CONFIRMATION = "api_confirmation"
    SCRAPE_CHECK = "scrape_check"
    DIRECTORY_SEARCH = "directory_search"
    LISTING_URL_200 = "listing_url_200"
    MANUAL_CONFIRMATION = "manual_confirmation"
    WEBHOOK_CONFIRMED = "webhook_confirmed"


@dataclass(frozen=True)
class ArtifactTypeMeta:
    """Linkage and redaction policy for an artifact type."""

    linked_to: ArtifactLink
    requires_redaction: bool


_RUN = ArtifactLink.RUN
_TARGET = ArtifactLink.TARGET

ARTIFACT_TYPE_META: Mapping[ArtifactType, ArtifactTypeMeta] = MappingProxyType(
    {
        ArtifactType.REQUEST_PAYLOAD: ArtifactTypeMeta(_RUN, True),
        ArtifactType.RESPONSE_PAYLOAD: ArtifactTypeMeta(_RUN, True),
        ArtifactType.STATUS_CHECK_REQUEST: ArtifactTypeMeta(_RUN, False),
        ArtifactType.STATUS_CHECK_RESPONSE: ArtifactTypeMeta(_RUN, True),
        ArtifactType.WEBHOOK_PAYLOAD: ArtifactTypeMeta(_RUN, True),
        ArtifactType.PAYLOAD_MAPPING_RESULT: ArtifactTypeMeta(_RUN, True),
        ArtifactType.SCREENSHOT_PRE: ArtifactTypeMeta(_RUN, False),
        ArtifactType.SCREENSHOT_POST: ArtifactTypeMeta(_RUN, False),
        ArtifactType.SCREENSHOT_ERROR: ArtifactTypeMeta(_RUN, False),
        ArtifactType.SCREENSHOT_LISTING: ArtifactTypeMeta(_TARGET, False),
        ArtifactType.CONFIRMATION_EMAIL: ArtifactTypeMeta(_RUN, True),
        ArtifactType.SUBMISSION_RECEIPT: ArtifactTypeMeta(_RUN, False),
        ArtifactType.EXTERNAL_ID: ArtifactTypeMeta(_RUN, False),
        ArtifactType.LISTING_URL: ArtifactTypeMeta(_TARGET, False),
        ArtifactType.DUPLICATE_CHECK: ArtifactTypeMeta(_RUN, False),
        ArtifactType.VALIDATION_RESULT: ArtifactTypeMeta(_RUN, False),
        ArtifactType.LIVE_VERIFICATION_RESULT: ArtifactTypeMeta(_RUN, False),
        ArtifactType.ERROR_LOG: ArtifactTypeMeta(_RUN, True),
        ArtifactType.RETRY_LOG: ArtifactTypeMeta(_RUN, False),
        ArtifactType.RAW_STATUS: ArtifactTypeMeta(_RUN, True),
        ArtifactType.SUBMISSION_PACKET: ArtifactTypeMeta(_RUN, True),
        ArtifactType.INSTRUCTIONS: ArtifactTypeMeta(_RUN, False),
    }
)


ACTION_NEEDED_TO_STATUS_REASON: Mapping[ActionNeededType, StatusReason] = MappingProxyType(
    {
        ActionNeededType.CAPTCHA: StatusReason.CAPTCHA_REQUIRED,
        ActionNeededType.MFA: StatusReason.MFA_REQUIRED,
        ActionNeededType.REAUTH: StatusReason.REAUTH_REQUIRED,
        ActionNeededType.LOGIN_REQUIRED: StatusReason.LOGIN_REQUIRED,
        ActionNeededType.CONSENT_REQUIRED: StatusReason.CONSENT_REQUIRED,
        ActionNeededType.PAYMENT_REQUIRED: StatusReason.PAYMENT_REQUIRED,
        ActionNeededType.VERIFICATION: StatusReason.VERIFICATION_REQUIRED,
        ActionNeededType.CLAIM_LISTING: StatusReason.CLAIM_LISTING_REQUIRED,
        ActionNeededType.MANUAL_REVIEW: StatusReason.MANUAL_REVIEW_REQUIRED,
        ActionNeededType.CONTENT_FIX: StatusReason.CONTENT_FIX_REQUIRED,
        ActionNeededType.MISSING_FIELDS: StatusReason.MISSING_REQUIRED_FIELDS,
        ActionNeededType.OTHER: StatusReason.VERIFICATION_REQUIRED,
    }
)

ERROR_TYPE_TO_STATUS_REASON: Mapping[ErrorType, StatusReason] = MappingProxyType(
    {
        ErrorType.NETWORK_ERROR: StatusReason.NETWORK_ERROR,
        ErrorType.TIMEOUT: StatusReason.TIMEOUT,
        ErrorType.SERVER_ERROR: StatusReason.SERVER_ERROR,
        ErrorType.TEMPORARY_FAILURE: StatusReason.SERVER_ERROR,
        ErrorType.RATE_LIMITED: StatusReason.RATE_LIMITED,
        ErrorType.AUTH_ERROR: StatusReason.AUTH_FAILED,
        ErrorType.LOCK_ERROR: StatusReason.LOCK_EXPIRED,
        ErrorType.VALIDATION_ERROR: StatusReason.VALIDATION_FAILED,
        ErrorType.DUPLICATE: StatusReason.DUPLICATE_FOUND,
    }
)

RETRYABLE_ERRORS = frozenset(
    {
        ErrorType.NETWORK_ERROR,
        ErrorType.TIMEOUT,
        ErrorType.RATE_LIMITED,
        ErrorType.SERVER_ERROR,
        ErrorType.TEMPORARY_FAILURE,
        ErrorType.LOCK_ERROR,
    }
)


def coerce_enum(enum_cls: Type[E], value: object) -> Optional[E]:
    """Return the enum member for ``value``, or None if it is not a member.

    Accepts either a member or its raw string value.
    """
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        return None


def enum_values(enum_cls: Type[Enum]) -> list:
    """Raw values of an enum, in declaration order."""
    return [member.value for member in enum_cls]


def map_action_needed_to_status_reason(action_needed_type: object) -> StatusReason:
    """Map an action-needed type to its status reason.

    Unknown values fall back to VERIFICATION_REQUIRED.
    """
    member = coerce_enum(ActionNeededType, action_needed_type)
    if member is None:
        return StatusReason.VERIFICATION_REQUIRED
    return ACTION_NEEDED_TO_STATUS_REASON[member]


def map_error_type_to_status_reason(error_type: object) -> StatusReason:
    """Map an error type to its status reason.

    Total function: every error type without a dedicated reason, and any
    unknown value, maps to CONNECTOR_ERROR.
    """
    member = coerce_enum(ErrorType, error_type)
    return ERROR_TYPE_TO_STATUS_REASON.get(member, StatusReason.CONNECTOR_ERROR)


def is_retryable_error(error_type: object) -> bool:
    """Whether an error type is worth retrying automatically."""
    return coerce_enum(ErrorType, error_type) in RETRYABLE_ERRORS

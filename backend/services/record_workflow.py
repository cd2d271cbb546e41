"""
Record Workflow Decision Table
Defines, for every entity family and status, which actions each role may take
and where each action leads. This is the single source of truth for gating:
services consult it at write time, and routes use it to report the actions a
caller may take on a record.

Registrations, inspections, operator licenses and infringements all follow the
same shape: a closed status enum, role-gated actions, and a direct update.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple, Type

from models import (
    EntityType,
    InfringementStatus,
    InspectionStatus,
    LicenseStatus,
    RegistrationStatus,
    UserRole,
)
from utils.errors import TransitionNotAllowedError


class RecordAction(str, Enum):
    EDIT = "Edit"
    SUBMIT = "Submit"
    REVIEW = "Review"
    APPROVE = "Approve"
    REJECT = "Reject"
    REQUEST_INFO = "RequestInfo"
    START = "Start"
    COMPLETE = "Complete"
    EDIT_SCHEDULE = "EditSchedule"
    RECORD_CHECKLIST = "RecordChecklist"
    CANCEL = "Cancel"
    REQUIRE_TEST = "RequireTest"
    SCHEDULE_TEST = "ScheduleTest"
    RECORD_TEST_PASS = "RecordTestPass"
    RECORD_TEST_FAIL = "RecordTestFail"
    REVOKE = "Revoke"
    ISSUE = "Issue"
    MARK_PAID = "MarkPaid"
    VOID = "Void"
    GENERATE_CERTIFICATE = "GenerateCertificate"


@dataclass(frozen=True)
class ActionRule:
    """One permitted action at one status.

    roles may take the action unconditionally; assignee_roles only when the
    caller is the record's assignee (e.g. the inspector assigned to an inspection).
    """
    action: RecordAction
    roles: FrozenSet[UserRole]
    target_status: Optional[str] = None
    assignee_roles: FrozenSet[UserRole] = field(default_factory=frozenset)

    def permits(self, role: UserRole, is_assignee: bool) -> bool:
        if role in self.roles:
            return True
        return is_assignee and role in self.assignee_roles


def _roles(*roles: UserRole) -> FrozenSet[UserRole]:
    return frozenset(roles)


A, R, I, S = UserRole.ADMIN, UserRole.REGISTRAR, UserRole.INSPECTOR, UserRole.SUPERVISOR

ADMIN_REGISTRAR = _roles(A, R)
ADMIN_ONLY = _roles(A)
MANAGERS = _roles(A, R, S)
FIELD_STAFF = _roles(A, R, I, S)
ASSIGNED_INSPECTOR = _roles(I)


def _rule(action, roles, target=None, assignee_roles=frozenset()) -> ActionRule:
    target_value = target.value if isinstance(target, Enum) else target
    return ActionRule(action=action, roles=roles, target_status=target_value, assignee_roles=assignee_roles)


Act = RecordAction
RS = RegistrationStatus
IS = InspectionStatus
LS = LicenseStatus
FS = InfringementStatus


REGISTRATION_RULES: Dict[RegistrationStatus, List[ActionRule]] = {
    RS.DRAFT: [
        _rule(Act.EDIT, MANAGERS),
        _rule(Act.SUBMIT, MANAGERS, RS.SUBMITTED),
    ],
    RS.SUBMITTED: [
        _rule(Act.EDIT, MANAGERS),
        _rule(Act.REVIEW, MANAGERS, RS.PENDING_REVIEW),
        _rule(Act.APPROVE, ADMIN_REGISTRAR, RS.APPROVED),
        _rule(Act.REJECT, ADMIN_REGISTRAR, RS.REJECTED),
        _rule(Act.REQUEST_INFO, ADMIN_REGISTRAR, RS.REQUIRES_INFO),
    ],
    RS.PENDING_REVIEW: [
        _rule(Act.APPROVE, ADMIN_REGISTRAR, RS.APPROVED),
        _rule(Act.REJECT, ADMIN_REGISTRAR, RS.REJECTED),
        _rule(Act.REQUEST_INFO, ADMIN_REGISTRAR, RS.REQUIRES_INFO),
    ],
    RS.REQUIRES_INFO: [
        _rule(Act.EDIT, MANAGERS),
        _rule(Act.SUBMIT, MANAGERS, RS.SUBMITTED),
        _rule(Act.APPROVE, ADMIN_REGISTRAR, RS.APPROVED),
        _rule(Act.REJECT, ADMIN_REGISTRAR, RS.REJECTED),
    ],
    RS.APPROVED: [
        _rule(Act.GENERATE_CERTIFICATE, ADMIN_REGISTRAR),
    ],
    RS.REJECTED: [],
    RS.EXPIRED: [],
}

INSPECTION_RULES: Dict[InspectionStatus, List[ActionRule]] = {
    IS.SCHEDULED: [
        _rule(Act.START, MANAGERS, IS.IN_PROGRESS, assignee_roles=ASSIGNED_INSPECTOR),
        _rule(Act.EDIT_SCHEDULE, MANAGERS),
        _rule(Act.CANCEL, MANAGERS, IS.CANCELLED),
    ],
    IS.IN_PROGRESS: [
        _rule(Act.RECORD_CHECKLIST, MANAGERS, assignee_roles=ASSIGNED_INSPECTOR),
        _rule(Act.COMPLETE, MANAGERS, IS.PENDING_REVIEW, assignee_roles=ASSIGNED_INSPECTOR),
        _rule(Act.EDIT_SCHEDULE, MANAGERS),
        _rule(Act.CANCEL, MANAGERS, IS.CANCELLED),
    ],
    IS.PENDING_REVIEW: [
        _rule(Act.APPROVE, MANAGERS, IS.PASSED),
        _rule(Act.REJECT, MANAGERS, IS.FAILED),
    ],
    IS.PASSED: [
        _rule(Act.EDIT_SCHEDULE, MANAGERS),
    ],
    IS.FAILED: [],
    IS.CANCELLED: [],
}

LICENSE_RULES: Dict[LicenseStatus, List[ActionRule]] = {
    LS.DRAFT: [
        _rule(Act.EDIT, MANAGERS),
        _rule(Act.SUBMIT, MANAGERS, LS.SUBMITTED),
    ],
    LS.SUBMITTED: [
        _rule(Act.REVIEW, MANAGERS, LS.PENDING_REVIEW),
        _rule(Act.APPROVE, MANAGERS, LS.APPROVED),
        _rule(Act.REJECT, MANAGERS, LS.REJECTED),
    ],
    LS.PENDING_REVIEW: [
        _rule(Act.APPROVE, MANAGERS, LS.APPROVED),
        _rule(Act.REJECT, MANAGERS, LS.REJECTED),
        _rule(Act.REQUEST_INFO, MANAGERS, LS.REQUIRES_INFO),
        _rule(Act.REQUIRE_TEST, MANAGERS, LS.AWAITING_TEST),
    ],
    LS.REQUIRES_INFO: [
        _rule(Act.EDIT, MANAGERS),
        _rule(Act.SUBMIT, MANAGERS, LS.SUBMITTED),
        _rule(Act.APPROVE, MANAGERS, LS.APPROVED),
        _rule(Act.REJECT, MANAGERS, LS.REJECTED),
    ],
    LS.AWAITING_TEST: [
        _rule(Act.SCHEDULE_TEST, MANAGERS, LS.TEST_SCHEDULED),
        _rule(Act.REJECT, MANAGERS, LS.REJECTED),
    ],
    LS.TEST_SCHEDULED: [
        _rule(Act.RECORD_TEST_PASS, FIELD_STAFF, LS.TEST_PASSED),
        _rule(Act.RECORD_TEST_FAIL, FIELD_STAFF, LS.TEST_FAILED),
        _rule(Act.REJECT, MANAGERS, LS.REJECTED),
    ],
    LS.TEST_PASSED: [
        _rule(Act.APPROVE, MANAGERS, LS.APPROVED),
    ],
    LS.TEST_FAILED: [
        _rule(Act.SCHEDULE_TEST, MANAGERS, LS.TEST_SCHEDULED),
        _rule(Act.REJECT, MANAGERS, LS.REJECTED),
    ],
    LS.APPROVED: [
        _rule(Act.EDIT, MANAGERS),
        _rule(Act.REVOKE, MANAGERS, LS.REVOKED),
    ],
    LS.REJECTED: [],
    LS.EXPIRED: [
        _rule(Act.REVOKE, MANAGERS, LS.REVOKED),
    ],
    LS.REVOKED: [],
}

INFRINGEMENT_RULES: Dict[InfringementStatus, List[ActionRule]] = {
    FS.DRAFT: [
        _rule(Act.EDIT, FIELD_STAFF),
        _rule(Act.ISSUE, FIELD_STAFF, FS.ISSUED),
    ],
    FS.ISSUED: [
        _rule(Act.APPROVE, ADMIN_REGISTRAR, FS.APPROVED),
        _rule(Act.REVIEW, MANAGERS, FS.PENDING_REVIEW),
        _rule(Act.VOID, ADMIN_REGISTRAR, FS.VOIDED),
    ],
    FS.PENDING_REVIEW: [
        _rule(Act.APPROVE, ADMIN_REGISTRAR, FS.APPROVED),
        _rule(Act.VOID, ADMIN_REGISTRAR, FS.VOIDED),
    ],
    FS.APPROVED: [
        _rule(Act.MARK_PAID, ADMIN_REGISTRAR, FS.PAID),
        _rule(Act.VOID, ADMIN_ONLY, FS.VOIDED),
    ],
    FS.OVERDUE: [
        _rule(Act.MARK_PAID, ADMIN_REGISTRAR, FS.PAID),
        _rule(Act.VOID, ADMIN_ONLY, FS.VOIDED),
    ],
    FS.PAID: [],
    FS.VOIDED: [],
}


DECISION_TABLE: Dict[EntityType, Tuple[Type[Enum], Dict]] = {
    EntityType.REGISTRATION: (RegistrationStatus, REGISTRATION_RULES),
    EntityType.INSPECTION: (InspectionStatus, INSPECTION_RULES),
    EntityType.OPERATOR_LICENSE: (LicenseStatus, LICENSE_RULES),
    EntityType.INFRINGEMENT: (InfringementStatus, INFRINGEMENT_RULES),
}

ENTITY_LABELS: Dict[EntityType, str] = {
    EntityType.REGISTRATION: "Registration",
    EntityType.INSPECTION: "Inspection",
    EntityType.OPERATOR_LICENSE: "Operator license",
    EntityType.INFRINGEMENT: "Infringement",
}


def _rules_for(entity_type: EntityType, status: str) -> List[ActionRule]:
    status_enum, table = DECISION_TABLE[entity_type]
    try:
        key = status_enum(status)
    except ValueError:
        return []
    return table.get(key, [])


def allowed_actions(
    entity_type: EntityType,
    status: str,
    role: UserRole,
    actor_id: Optional[str] = None,
    assignee_id: Optional[str] = None,
) -> List[RecordAction]:
    """Actions the role may take on a record in status. Unknown status gives []."""
    is_assignee = bool(actor_id) and actor_id == assignee_id
    return [rule.action for rule in _rules_for(entity_type, status) if rule.permits(role, is_assignee)]


def check_transition(
    entity_type: EntityType,
    status: str,
    action: RecordAction,
    role: UserRole,
    actor_id: Optional[str] = None,
    assignee_id: Optional[str] = None,
) -> ActionRule:
    """Return the rule authorising action, or raise TransitionNotAllowedError."""
    is_assignee = bool(actor_id) and actor_id == assignee_id
    for rule in _rules_for(entity_type, status):
        if rule.action == action and rule.permits(role, is_assignee):
            return rule

    raise TransitionNotAllowedError(
        resource_type=ENTITY_LABELS[entity_type],
        action=action.value,
        status=status,
        role=role.value,
        allowed=[a.value for a in allowed_actions(entity_type, status, role, actor_id, assignee_id)],
    )

from pydantic import BaseModel, EmailStr, Field, ConfigDict, field_validator, model_validator
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone
from enum import Enum
import uuid

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class UserRole(str, Enum):
    ADMIN = "Admin"
    REGISTRAR = "Registrar"
    INSPECTOR = "Inspector"
    SUPERVISOR = "Supervisor"
    READ_ONLY = "ReadOnly"

class EntityType(str, Enum):
    REGISTRATION = "registration"
    INSPECTION = "inspection"
    OPERATOR_LICENSE = "operator_license"
    INFRINGEMENT = "infringement"

class RegistrationStatus(str, Enum):
    DRAFT = "Draft"
    SUBMITTED = "Submitted"
    PENDING_REVIEW = "PendingReview"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    EXPIRED = "Expired"
    REQUIRES_INFO = "RequiresInfo"

class InspectionStatus(str, Enum):
    SCHEDULED = "Scheduled"
    IN_PROGRESS = "InProgress"
    PENDING_REVIEW = "PendingReview"
    PASSED = "Passed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"

class LicenseStatus(str, Enum):
    DRAFT = "Draft"
    SUBMITTED = "Submitted"
    PENDING_REVIEW = "PendingReview"
    REQUIRES_INFO = "RequiresInfo"
    AWAITING_TEST = "AwaitingTest"
    TEST_SCHEDULED = "TestScheduled"
    TEST_PASSED = "TestPassed"
    TEST_FAILED = "TestFailed"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    EXPIRED = "Expired"
    REVOKED = "Revoked"

class InfringementStatus(str, Enum):
    DRAFT = "Draft"
    ISSUED = "Issued"
    PENDING_REVIEW = "PendingReview"
    APPROVED = "Approved"
    PAID = "Paid"
    VOIDED = "Voided"
    OVERDUE = "Overdue"

class InspectionType(str, Enum):
    INITIAL = "Initial"
    ANNUAL = "Annual"
    COMPLIANCE = "Compliance"
    FOLLOW_UP = "FollowUp"

class OverallResult(str, Enum):
    PASS = "Pass"
    PASS_WITH_RECOMMENDATIONS = "PassWithRecommendations"
    FAIL = "Fail"
    NOT_APPLICABLE = "N/A"

class ChecklistResult(str, Enum):
    YES = "Yes"
    NO = "No"
    NOT_APPLICABLE = "N/A"

class OwnerRole(str, Enum):
    PRIMARY = "Primary"
    CO_OWNER = "CoOwner"

class CompetencyTestResult(str, Enum):
    PASS = "Pass"
    FAIL = "Fail"
    PENDING_GRADING = "PendingGrading"

class PaymentMethod(str, Enum):
    CASH = "Cash"
    CARD = "Card"
    BANK_DEPOSIT = "BankDeposit"
    OTHER = "Other"

class AuditAction(str, Enum):
    USER_LOGIN = "USER_LOGIN"
    USER_LOGIN_FAILED = "USER_LOGIN_FAILED"
    USER_CREATED = "USER_CREATED"
    USER_STATUS_CHANGED = "USER_STATUS_CHANGED"
    RECORD_CREATED = "RECORD_CREATED"
    RECORD_UPDATED = "RECORD_UPDATED"
    RECORD_TRANSITION = "RECORD_TRANSITION"
    CHECKLIST_UPDATED = "CHECKLIST_UPDATED"
    CHECKLIST_AI_SUGGESTED = "CHECKLIST_AI_SUGGESTED"
    REGISTRATION_IMPORT = "REGISTRATION_IMPORT"
    REPORT_EXPORTED = "REPORT_EXPORTED"
    EXPIRY_SWEEP = "EXPIRY_SWEEP"
    JOB_RUN_MANUAL = "JOB_RUN_MANUAL"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# USERS
# ============================================================================

class User(BaseModel):
    model_config = ConfigDict(extra="ignore")

    user_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    email: EmailStr
    display_name: Optional[str] = None
    role: UserRole = UserRole.READ_ONLY
    is_active: bool = True
    password_hash: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    last_login_at: Optional[datetime] = None

class UserCreate(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8)
    display_name: Optional[str] = None
    role: UserRole = UserRole.READ_ONLY

class UserActiveUpdate(BaseModel):
    is_active: bool

class LoginRequest(BaseModel):
    email: EmailStr
    password: str


# ============================================================================
# REGISTRATIONS
# ============================================================================

class Owner(BaseModel):
    model_config = ConfigDict(extra="ignore")

    owner_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    role: OwnerRole
    surname: str
    first_name: str
    dob: Optional[datetime] = None
    sex: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    postal_address: Optional[str] = None
    town_district: Optional[str] = None
    llg: Optional[str] = None  # Local Level Government
    ward_village: Optional[str] = None

class EngineDetail(BaseModel):
    make: Optional[str] = None
    horsepower: Optional[float] = None
    serial_number: Optional[str] = None

class RegistrationPayment(BaseModel):
    payment_method: Optional[PaymentMethod] = None
    payment_receipt_number: Optional[str] = None
    bank_stamp_ref: Optional[str] = None
    payment_amount: Optional[float] = None
    payment_date: Optional[datetime] = None

class RegistrationFields(BaseModel):
    """Editable craft and owner fields shared by create and edit."""
    model_config = ConfigDict(extra="ignore")

    registration_type: str = "New"  # New, Renewal
    previous_sca_rego_no: Optional[str] = None
    interim_rego_no: Optional[str] = None
    owners: List[Owner]
    craft_make: str
    craft_model: str
    craft_year: Optional[int] = None
    craft_color: Optional[str] = None
    hull_id_number: str
    craft_length: Optional[float] = None
    length_units: str = "m"
    passenger_capacity: Optional[int] = None
    distinguishing_features: Optional[str] = None
    propulsion_type: Optional[str] = None
    propulsion_other_desc: Optional[str] = None
    hull_material: Optional[str] = None
    hull_material_other_desc: Optional[str] = None
    craft_use: Optional[str] = None
    craft_use_other_desc: Optional[str] = None
    fuel_type: Optional[str] = None
    fuel_type_other_desc: Optional[str] = None
    vessel_type: Optional[str] = None
    vessel_type_other_desc: Optional[str] = None
    engines: List[EngineDetail] = Field(default_factory=list)
    payment: Optional[RegistrationPayment] = None
    safety_cert_number: Optional[str] = None
    safety_equip_issued: bool = False
    safety_equip_receipt_number: Optional[str] = None

    @field_validator("length_units")
    @classmethod
    def validate_length_units(cls, v: str) -> str:
        if v not in ("m", "ft"):
            raise ValueError("length_units must be 'm' or 'ft'")
        return v

    @model_validator(mode="after")
    def validate_primary_owner(self):
        if not self.owners:
            raise ValueError("At least one owner is required")
        primaries = [o for o in self.owners if o.role == OwnerRole.PRIMARY]
        if len(primaries) != 1:
            raise ValueError("Exactly one owner must have the Primary role")
        return self

class ApproveRegistrationRequest(BaseModel):
    sca_rego_no: Optional[str] = None
    effective_date: Optional[datetime] = None
    expiry_date: Optional[datetime] = None
    notes: Optional[str] = None


# ============================================================================
# INSPECTIONS
# ============================================================================

class ChecklistItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    item_id: str = Field(default_factory=lambda: f"item_{uuid.uuid4().hex[:12]}")
    item_description: str
    result: ChecklistResult = ChecklistResult.NOT_APPLICABLE
    comments: Optional[str] = None
    category: Optional[str] = None

class ChecklistTemplateItem(BaseModel):
    item_id: str
    item_description: str
    category: Optional[str] = None
    order: int

class ChecklistTemplate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    template_id: str
    name: str
    inspection_type: InspectionType
    items: List[ChecklistTemplateItem]
    is_active: bool = True

class InspectionCreate(BaseModel):
    registration_id: str
    inspector_id: Optional[str] = None
    inspection_type: InspectionType
    scheduled_date: datetime
    follow_up_required: bool = False

class InspectionScheduleUpdate(BaseModel):
    inspector_id: Optional[str] = None
    inspection_type: Optional[InspectionType] = None
    scheduled_date: Optional[datetime] = None

class ChecklistItemCreate(BaseModel):
    item_description: str = Field(min_length=1)
    category: Optional[str] = None
    result: ChecklistResult = ChecklistResult.NOT_APPLICABLE
    comments: Optional[str] = None

class ChecklistResultUpdate(BaseModel):
    result: ChecklistResult
    comments: Optional[str] = None

class CompleteInspectionRequest(BaseModel):
    overall_result: Optional[OverallResult] = None
    findings: Optional[str] = None
    corrective_actions: Optional[str] = None
    follow_up_required: Optional[bool] = None

class ReviewDecisionRequest(BaseModel):
    notes: Optional[str] = None


# ============================================================================
# OPERATOR LICENSING
# ============================================================================

class OperatorFields(BaseModel):
    model_config = ConfigDict(extra="ignore")

    surname: str
    first_name: str
    dob: Optional[datetime] = None
    sex: Optional[str] = None
    place_of_origin_town: Optional[str] = None
    place_of_origin_district: Optional[str] = None
    place_of_origin_llg: Optional[str] = None
    place_of_origin_village: Optional[str] = None
    phone_mobile: Optional[str] = None
    email: Optional[str] = None
    postal_address: Optional[str] = None
    height_cm: Optional[float] = None
    eye_color: Optional[str] = None
    hair_color: Optional[str] = None
    weight_kg: Optional[float] = None
    body_marks: Optional[str] = None

class LicenseApplicationCreate(BaseModel):
    operator: OperatorFields
    application_type: str = "New"  # New, Renewal
    previous_license_number: Optional[str] = None
    notes: Optional[str] = None

    @model_validator(mode="after")
    def validate_renewal(self):
        if self.application_type not in ("New", "Renewal"):
            raise ValueError("application_type must be 'New' or 'Renewal'")
        if self.application_type == "Renewal" and not self.previous_license_number:
            raise ValueError("previous_license_number is required for renewals")
        return self

class LicenseApplicationUpdate(BaseModel):
    """Office-use and application fields editable in Draft, RequiresInfo and Approved."""
    model_config = ConfigDict(extra="ignore")

    previous_license_number: Optional[str] = None
    receipt_no: Optional[str] = None
    place_issued: Optional[str] = None
    method_of_payment: Optional[PaymentMethod] = None
    payment_by: Optional[str] = None
    payment_date: Optional[datetime] = None
    payment_amount: Optional[float] = None
    notes: Optional[str] = None

class ApproveLicenseRequest(BaseModel):
    assigned_license_number: Optional[str] = None
    issued_at: Optional[datetime] = None
    expiry_date: Optional[datetime] = None
    notes: Optional[str] = None

class ScheduleTestRequest(BaseModel):
    test_date: datetime
    examiner_id: Optional[str] = None
    notes: Optional[str] = None

class RecordTestResultRequest(BaseModel):
    score_achieved: Optional[float] = None
    percentage_achieved: Optional[float] = Field(default=None, ge=0, le=100)
    notes: Optional[str] = None

class ReasonRequest(BaseModel):
    reason: str = Field(min_length=1)


# ============================================================================
# INFRINGEMENTS
# ============================================================================

class InfringementItemSelection(BaseModel):
    item_id: str
    notes: Optional[str] = None

class InfringementCreate(BaseModel):
    registration_id: str
    infringement_date: datetime
    location_description: str = Field(min_length=1)
    items: List[InfringementItemSelection] = Field(min_length=1)
    officer_notes: Optional[str] = None
    issue_now: bool = False

class PaymentDetails(BaseModel):
    receipt_number: str
    payment_date: datetime
    payment_method: PaymentMethod
    amount_paid: float = Field(ge=0)


# ============================================================================
# AUDIT
# ============================================================================

class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: AuditAction
    actor_role: Optional[UserRole] = None
    actor_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=_utcnow)


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


def to_document(model: BaseModel, **kwargs) -> Dict[str, Any]:
    """Dump a model for storage: enums as their values, datetimes kept native."""
    return _plain(model.model_dump(**kwargs))

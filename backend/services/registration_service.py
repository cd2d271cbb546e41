"""
Craft registration service.

Registrations are created as Draft, edited while Draft/Submitted/RequiresInfo,
and moved through review to Approved or Rejected by the decision table in
record_workflow. Approval stamps the SCA registration number and the
effective/expiry pair; the expiry sweep in job_runner later marks lapsed
registrations Expired.
"""
import csv
import io
import re
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import logging

from pydantic import ValidationError

from database import database
from middleware import RequestContext
from models import (
    ApproveRegistrationRequest,
    AuditAction,
    EngineDetail,
    EntityType,
    Owner,
    RegistrationFields,
    RegistrationStatus,
    to_document,
)
from services.projections import resolve_user, to_public
from services.record_workflow import RecordAction, allowed_actions
from services.transitions import apply_action, load_record
from utils.audit import create_audit_log
from utils.errors import RecordValidationError
from utils.references import ref_match_query, to_dbref
from utils.timestamps import normalize_timestamp

logger = logging.getLogger(__name__)

# Column layout of the bulk import template
IMPORT_CSV_HEADERS = [
    "registrationType", "previousScaRegoNo", "craftMake", "craftModel", "craftYear", "craftColor",
    "hullIdNumber", "craftLength", "lengthUnits", "passengerCapacity", "distinguishingFeatures",
    "propulsionType", "propulsionOtherDesc", "hullMaterial", "hullMaterialOtherDesc", "craftUse",
    "craftUseOtherDesc", "fuelType", "fuelTypeOtherDesc", "vesselType", "vesselTypeOtherDesc",
    "engine1_make", "engine1_horsepower", "engine1_serialNumber",
    "engine2_make", "engine2_horsepower", "engine2_serialNumber",
    "owner1_role", "owner1_surname", "owner1_firstName", "owner1_dob", "owner1_sex", "owner1_phone",
    "owner1_email", "owner1_postalAddress", "owner1_townDistrict", "owner1_llg", "owner1_wardVillage",
    "owner2_role", "owner2_surname", "owner2_firstName", "owner2_dob", "owner2_sex", "owner2_phone",
    "owner2_email", "owner2_postalAddress", "owner2_townDistrict", "owner2_llg", "owner2_wardVillage",
]

_CRAFT_COLUMNS = {
    "registrationType": "registration_type",
    "previousScaRegoNo": "previous_sca_rego_no",
    "craftMake": "craft_make",
    "craftModel": "craft_model",
    "craftYear": "craft_year",
    "craftColor": "craft_color",
    "hullIdNumber": "hull_id_number",
    "craftLength": "craft_length",
    "lengthUnits": "length_units",
    "passengerCapacity": "passenger_capacity",
    "distinguishingFeatures": "distinguishing_features",
    "propulsionType": "propulsion_type",
    "propulsionOtherDesc": "propulsion_other_desc",
    "hullMaterial": "hull_material",
    "hullMaterialOtherDesc": "hull_material_other_desc",
    "craftUse": "craft_use",
    "craftUseOtherDesc": "craft_use_other_desc",
    "fuelType": "fuel_type",
    "fuelTypeOtherDesc": "fuel_type_other_desc",
    "vesselType": "vessel_type",
    "vesselTypeOtherDesc": "vessel_type_other_desc",
}

_OWNER_COLUMNS = {
    "role": "role",
    "surname": "surname",
    "firstName": "first_name",
    "dob": "dob",
    "sex": "sex",
    "phone": "phone",
    "email": "email",
    "postalAddress": "postal_address",
    "townDistrict": "town_district",
    "llg": "llg",
    "wardVillage": "ward_village",
}


def present_registration(ctx: RequestContext, doc: Dict[str, Any]) -> Dict[str, Any]:
    """Public view of a registration with the caller's permitted actions."""
    public = to_public(doc)
    public["allowed_actions"] = [
        a.value for a in allowed_actions(EntityType.REGISTRATION, doc.get("status"), ctx.role, ctx.user_id)
    ]
    return public


async def create_registration(ctx: RequestContext, data: RegistrationFields) -> Dict[str, Any]:
    db = database.get_db()
    now = datetime.now(timezone.utc)
    actor_ref = to_dbref("users", ctx.user_id)

    doc = to_document(data)
    doc.update({
        "registration_id": str(uuid.uuid4()),
        "status": RegistrationStatus.DRAFT.value,
        "created_at": now,
        "created_by_ref": actor_ref,
        "last_updated_at": now,
        "last_updated_by_ref": actor_ref,
    })

    await db.registrations.insert_one(doc)
    doc.pop("_id", None)

    await create_audit_log(
        action=AuditAction.RECORD_CREATED,
        actor_role=ctx.role,
        actor_id=ctx.user_id,
        resource_type=EntityType.REGISTRATION.value,
        resource_id=doc["registration_id"],
        metadata={"hull_id_number": data.hull_id_number},
    )
    logger.info(f"Registration created: {doc['registration_id']} by {ctx.email}")
    return doc


async def update_registration(ctx: RequestContext, registration_id: str, data: RegistrationFields) -> Dict[str, Any]:
    return await apply_action(
        ctx, EntityType.REGISTRATION, registration_id, RecordAction.EDIT,
        fields=to_document(data),
    )


async def list_registrations(
    status: Optional[str] = None,
    search: Optional[str] = None,
    limit: int = 100,
    skip: int = 0,
) -> List[Dict[str, Any]]:
    db = database.get_db()
    query: Dict[str, Any] = {}
    if status:
        query["status"] = status
    if search:
        pattern = re.escape(search.strip())
        query["$or"] = [
            {"sca_rego_no": {"$regex": pattern, "$options": "i"}},
            {"hull_id_number": {"$regex": pattern, "$options": "i"}},
            {"craft_make": {"$regex": pattern, "$options": "i"}},
            {"owners.surname": {"$regex": pattern, "$options": "i"}},
        ]
    cursor = db.registrations.find(query, {"_id": 0}).sort("last_updated_at", -1).skip(skip).limit(limit)
    return await cursor.to_list(length=limit)


async def get_registration_detail(ctx: RequestContext, registration_id: str) -> Dict[str, Any]:
    """Registration with resolved creator/approver and its inspections."""
    db = database.get_db()
    registration = await load_record(EntityType.REGISTRATION, registration_id)

    inspections = await db.inspections.find(
        ref_match_query("registration_ref", "registrations", registration_id),
        {"_id": 0, "checklist_items": 0}
    ).sort("scheduled_date", -1).to_list(length=50)

    result = present_registration(ctx, registration)
    result["created_by"] = await resolve_user(db, registration.get("created_by_ref"))
    result["approved_by"] = await resolve_user(db, registration.get("approved_by_ref"))
    result["inspections"] = [to_public(i) for i in inspections]
    return result


async def submit_registration(ctx: RequestContext, registration_id: str) -> Dict[str, Any]:
    return await apply_action(ctx, EntityType.REGISTRATION, registration_id, RecordAction.SUBMIT)


async def start_review(ctx: RequestContext, registration_id: str) -> Dict[str, Any]:
    return await apply_action(ctx, EntityType.REGISTRATION, registration_id, RecordAction.REVIEW)


async def request_info(ctx: RequestContext, registration_id: str, reason: str) -> Dict[str, Any]:
    return await apply_action(
        ctx, EntityType.REGISTRATION, registration_id, RecordAction.REQUEST_INFO, reason=reason
    )


async def reject_registration(ctx: RequestContext, registration_id: str, reason: str) -> Dict[str, Any]:
    return await apply_action(
        ctx, EntityType.REGISTRATION, registration_id, RecordAction.REJECT, reason=reason
    )


async def approve_registration(
    ctx: RequestContext,
    registration_id: str,
    request: ApproveRegistrationRequest,
) -> Dict[str, Any]:
    """
    Approve a registration.
    Requires an SCA registration number and a valid effective/expiry pair,
    either in the request or already on the record.
    """
    registration = await load_record(EntityType.REGISTRATION, registration_id)

    sca_rego_no = (request.sca_rego_no or registration.get("sca_rego_no") or "").strip()
    if not sca_rego_no:
        raise RecordValidationError("SCA registration number is required for approval", field="sca_rego_no")

    effective = normalize_timestamp(request.effective_date or registration.get("effective_date"))
    expiry = normalize_timestamp(request.expiry_date or registration.get("expiry_date"))
    if effective is None:
        raise RecordValidationError("A valid effective date is required for approval", field="effective_date")
    if expiry is None:
        raise RecordValidationError("A valid expiry date is required for approval", field="expiry_date")
    if expiry <= effective:
        raise RecordValidationError("Expiry date must be after the effective date", field="expiry_date")

    fields: Dict[str, Any] = {
        "sca_rego_no": sca_rego_no,
        "effective_date": effective,
        "expiry_date": expiry,
    }
    if request.notes:
        fields["approval_notes"] = request.notes

    return await apply_action(
        ctx, EntityType.REGISTRATION, registration_id, RecordAction.APPROVE,
        fields=fields, record=registration,
    )


async def generate_certificate(ctx: RequestContext, registration_id: str) -> Dict[str, Any]:
    """Stamp certificate generation and return the printable certificate fields."""
    registration = await apply_action(
        ctx, EntityType.REGISTRATION, registration_id, RecordAction.GENERATE_CERTIFICATE
    )
    public = to_public(registration)
    owners = public.get("owners") or []
    return {
        "registration_id": registration_id,
        "sca_rego_no": public.get("sca_rego_no"),
        "effective_date": public.get("effective_date"),
        "expiry_date": public.get("expiry_date"),
        "craft": {
            "make": public.get("craft_make"),
            "model": public.get("craft_model"),
            "year": public.get("craft_year"),
            "color": public.get("craft_color"),
            "hull_id_number": public.get("hull_id_number"),
            "length": public.get("craft_length"),
            "length_units": public.get("length_units"),
            "vessel_type": public.get("vessel_type"),
        },
        "owners": [
            {"role": o.get("role"), "name": f"{o.get('first_name', '')} {o.get('surname', '')}".strip()}
            for o in owners
        ],
        "certificate_generated_at": public.get("certificate_generated_at"),
    }


# ============================================================================
# CSV IMPORT
# ============================================================================

def _blank_to_none(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _owner_from_row(row: Dict[str, str], prefix: str) -> Optional[Owner]:
    values = {
        field: _blank_to_none(row.get(f"{prefix}_{column}"))
        for column, field in _OWNER_COLUMNS.items()
    }
    if not values["surname"] and not values["first_name"]:
        return None
    if values["dob"]:
        values["dob"] = normalize_timestamp(values["dob"])
    return Owner(**{k: v for k, v in values.items() if v is not None})


def _engine_from_row(row: Dict[str, str], prefix: str) -> Optional[EngineDetail]:
    make = _blank_to_none(row.get(f"{prefix}_make"))
    horsepower = _blank_to_none(row.get(f"{prefix}_horsepower"))
    serial = _blank_to_none(row.get(f"{prefix}_serialNumber"))
    if not any((make, horsepower, serial)):
        return None
    return EngineDetail(make=make, horsepower=horsepower, serial_number=serial)


def registration_from_row(row: Dict[str, str]) -> RegistrationFields:
    """Build validated registration fields from one import row.

    Raises pydantic.ValidationError for rows that fail the schema.
    """
    data: Dict[str, Any] = {
        field: _blank_to_none(row.get(column))
        for column, field in _CRAFT_COLUMNS.items()
    }
    data = {k: v for k, v in data.items() if v is not None}
    data["owners"] = [o for o in (_owner_from_row(row, "owner1"), _owner_from_row(row, "owner2")) if o]
    data["engines"] = [e for e in (_engine_from_row(row, "engine1"), _engine_from_row(row, "engine2")) if e]
    return RegistrationFields(**data)


def _row_error(line_number: int, exc: ValidationError) -> str:
    messages = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ())) or 'row'}: {err.get('msg')}" for err in exc.errors()
    )
    return f"Row {line_number}: {messages}"


async def import_registrations_csv(ctx: RequestContext, content: str) -> Dict[str, Any]:
    """
    Create Draft registrations from a CSV laid out as IMPORT_CSV_HEADERS.
    Rows that fail validation are skipped and reported; valid rows are still imported.
    """
    reader = csv.DictReader(io.StringIO(content))
    headers = reader.fieldnames or []
    missing = [h for h in IMPORT_CSV_HEADERS if h not in headers]
    required = {"craftMake", "craftModel", "hullIdNumber", "owner1_role", "owner1_surname", "owner1_firstName"}
    if required & set(missing):
        raise RecordValidationError(
            f"CSV is missing required columns: {', '.join(sorted(required & set(missing)))}",
            field="headers",
        )
    if missing:
        logger.warning(f"Registration import: optional columns missing: {missing}")

    successful = 0
    errors: List[str] = []
    created_ids: List[str] = []

    # Header is line 1
    for line_number, row in enumerate(reader, start=2):
        if not any((v or "").strip() for v in row.values() if isinstance(v, str)):
            continue
        try:
            fields = registration_from_row(row)
        except ValidationError as e:
            errors.append(_row_error(line_number, e))
            continue
        doc = await create_registration(ctx, fields)
        created_ids.append(doc["registration_id"])
        successful += 1

    await create_audit_log(
        action=AuditAction.REGISTRATION_IMPORT,
        actor_role=ctx.role,
        actor_id=ctx.user_id,
        resource_type=EntityType.REGISTRATION.value,
        metadata={"successful": successful, "failed": len(errors)},
    )
    logger.info(f"Registration import by {ctx.email}: {successful} created, {len(errors)} failed")

    return {
        "success": not errors,
        "successful": successful,
        "failed": len(errors),
        "errors": errors,
        "registration_ids": created_ids,
    }

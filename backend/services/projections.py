"""
Display projections for cross-record links.

Each projector turns a full stored record into the small set of denormalized
fields shown next to a reference: who inspected, which craft, which operator.
"""
from typing import Any, Dict, List, Optional

from bson.dbref import DBRef

from utils.references import ref_id, resolve_reference
from utils.timestamps import normalize_timestamp


def primary_owner(owners: Optional[List[Dict[str, Any]]]) -> Optional[Dict[str, Any]]:
    """The Primary owner, falling back to the first listed owner."""
    if not owners:
        return None
    for owner in owners:
        if isinstance(owner, dict) and owner.get("role") == "Primary":
            return owner
    first = owners[0]
    return first if isinstance(first, dict) else None


def owner_name(owner: Optional[Dict[str, Any]]) -> str:
    if not owner:
        return ""
    return " ".join(p for p in (owner.get("first_name"), owner.get("surname")) if p)


def user_summary(doc: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "display_name": doc.get("display_name") or doc.get("email"),
        "email": doc.get("email"),
    }


def registration_summary(doc: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "sca_rego_no": doc.get("sca_rego_no"),
        "hull_id_number": doc.get("hull_id_number"),
        "craft_make": doc.get("craft_make"),
        "craft_model": doc.get("craft_model"),
        "craft_type": doc.get("vessel_type"),
        "owner_name": owner_name(primary_owner(doc.get("owners"))) or None,
    }


def operator_summary(doc: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "name": " ".join(p for p in (doc.get("first_name"), doc.get("surname")) if p) or None,
        "phone_mobile": doc.get("phone_mobile"),
        "email": doc.get("email"),
    }


async def resolve_user(db, raw: Any) -> Optional[Dict[str, Any]]:
    return await resolve_reference(db, raw, user_summary, "users")


async def resolve_registration(db, raw: Any) -> Optional[Dict[str, Any]]:
    return await resolve_reference(db, raw, registration_summary, "registrations")


async def resolve_operator(db, raw: Any) -> Optional[Dict[str, Any]]:
    return await resolve_reference(db, raw, operator_summary, "operators")


def _is_temporal_key(key: str) -> bool:
    return key.endswith("_at") or key.endswith("_date") or key == "dob"


def to_public(value: Any, key: str = "") -> Any:
    """Convert a stored record into a JSON-ready structure.

    Reference values collapse to their id and temporal fields are normalized,
    so legacy shapes never reach a response or an export row.
    """
    if key and _is_temporal_key(key) and value is not None and not isinstance(value, list):
        return normalize_timestamp(value)
    if isinstance(value, dict):
        return {k: to_public(v, k) for k, v in value.items() if k != "_id"}
    if isinstance(value, list):
        return [to_public(v, key) for v in value]
    if isinstance(value, DBRef):
        return ref_id(value)
    return value

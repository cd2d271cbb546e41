"""
Cross-record references.

Links between records have been persisted in several shapes over time:
DBRef pointers, "collection/id" path strings, bare id strings, and embedded
partial objects carrying an "id". Each raw value is parsed exactly once into
one of the Reference variants below, and each variant has a single resolution
path. Resolution is best-effort: a missing document, a failed fetch or a
permission refusal degrades to {"id": ...}; only absent input yields None.
"""
import asyncio
import logging
from collections.abc import Mapping
from typing import Annotated, Any, Callable, Dict, List, Literal, Optional, Union

from bson.dbref import DBRef
from pydantic import BaseModel, Field
from pymongo.errors import OperationFailure

from database import id_field_for
from utils.errors import MONGO_UNAUTHORIZED, STORE_PERMISSION_HINT

logger = logging.getLogger(__name__)

Projector = Callable[[Dict[str, Any]], Dict[str, Any]]


class PointerRef(BaseModel):
    kind: Literal["pointer"] = "pointer"
    collection: str
    id: str


class IdRef(BaseModel):
    kind: Literal["id"] = "id"
    id: str


class EmbeddedRef(BaseModel):
    kind: Literal["embedded"] = "embedded"
    id: str
    fields: Dict[str, Any] = Field(default_factory=dict)


class AbsentRef(BaseModel):
    kind: Literal["absent"] = "absent"


class MalformedRef(BaseModel):
    kind: Literal["malformed"] = "malformed"
    raw_type: str
    raw_repr: str


Reference = Annotated[
    Union[PointerRef, IdRef, EmbeddedRef, AbsentRef, MalformedRef],
    Field(discriminator="kind"),
]


def _clean_id(value: Any) -> Optional[str]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def parse_reference(raw: Any) -> Reference:
    """Classify a persisted reference value. Never raises."""
    if raw is None:
        return AbsentRef()

    if isinstance(raw, DBRef):
        ref_id = _clean_id(str(raw.id))
        if ref_id:
            return PointerRef(collection=raw.collection, id=ref_id)
        return MalformedRef(raw_type="DBRef", raw_repr=repr(raw)[:200])

    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            return AbsentRef()
        if "/" in text:
            parts = [p for p in text.strip("/").split("/") if p]
            if len(parts) >= 2:
                return PointerRef(collection=parts[-2], id=parts[-1])
            if len(parts) == 1:
                return IdRef(id=parts[0])
            return MalformedRef(raw_type="str", raw_repr=text[:200])
        return IdRef(id=text)

    if isinstance(raw, int) and not isinstance(raw, bool):
        return IdRef(id=str(raw))

    if isinstance(raw, Mapping):
        if "$ref" in raw and "$id" in raw:
            ref_id = _clean_id(str(raw["$id"]) if raw["$id"] is not None else None)
            if ref_id and isinstance(raw["$ref"], str):
                return PointerRef(collection=raw["$ref"], id=ref_id)
        ref_id = _clean_id(raw.get("id"))
        if ref_id:
            fields = {k: v for k, v in raw.items() if k != "id"}
            return EmbeddedRef(id=ref_id, fields=fields)

    return MalformedRef(raw_type=type(raw).__name__, raw_repr=repr(raw)[:200])


def ref_id(raw: Any) -> Optional[str]:
    """Id carried by a reference value, whatever its shape."""
    ref = parse_reference(raw)
    return getattr(ref, "id", None)


def to_dbref(collection: str, record_id: str) -> DBRef:
    return DBRef(collection, record_id)


def ref_match_query(field: str, collection: str, record_id: str) -> Dict[str, Any]:
    """Query matching a reference field stored in any of the id-bearing shapes."""
    return {
        "$or": [
            {f"{field}.$id": record_id},
            {field: record_id},
            {field: f"{collection}/{record_id}"},
            {f"{field}.id": record_id},
        ]
    }


def _minimal(record_id: str) -> Dict[str, Any]:
    return {"id": record_id, "resolved": False}


async def resolve_reference(
    db,
    raw: Any,
    projector: Projector,
    default_collection: str,
) -> Optional[Dict[str, Any]]:
    """Resolve a raw reference to a display projection.

    Returns None only for absent or malformed input. Never raises.
    """
    ref = parse_reference(raw)

    if isinstance(ref, AbsentRef):
        return None

    if isinstance(ref, MalformedRef):
        logger.warning(f"Malformed reference ({ref.raw_type}) in {default_collection}: {ref.raw_repr}")
        return None

    if isinstance(ref, EmbeddedRef):
        return {**ref.fields, "id": ref.id, "resolved": False}

    collection = ref.collection if isinstance(ref, PointerRef) else default_collection
    id_field = id_field_for(collection)
    try:
        doc = await getattr(db, collection).find_one({id_field: ref.id}, {"_id": 0})
    except OperationFailure as e:
        if e.code == MONGO_UNAUTHORIZED:
            logger.error(f"Permission denied resolving {collection}/{ref.id}: {e}. {STORE_PERMISSION_HINT}")
        else:
            logger.warning(f"Failed to resolve {collection}/{ref.id}: {e}")
        return _minimal(ref.id)
    except Exception as e:
        logger.warning(f"Failed to resolve {collection}/{ref.id}: {e}")
        return _minimal(ref.id)

    if not doc:
        logger.info(f"Referenced record missing: {collection}/{ref.id}")
        return _minimal(ref.id)

    try:
        projection = projector(doc)
    except Exception as e:
        logger.warning(f"Projection failed for {collection}/{ref.id}: {e}")
        return _minimal(ref.id)
    projection["id"] = ref.id
    projection["resolved"] = True
    return projection


async def resolve_references(
    db,
    raws: List[Any],
    projector: Projector,
    default_collection: str,
) -> List[Optional[Dict[str, Any]]]:
    """Resolve many references concurrently; one failure only degrades its own slot."""
    return list(await asyncio.gather(
        *(resolve_reference(db, raw, projector, default_collection) for raw in raws)
    ))

"""
Infringement notices: catalogue items, issue, approval, payment and voiding.
"""
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))

from bson.dbref import DBRef

from conftest import make_ctx
from models import InfringementCreate, InfringementItemSelection, PaymentDetails, UserRole
from services import infringement_service
from utils.errors import RecordNotFoundError, RecordValidationError, TransitionNotAllowedError

WHEN = datetime(2025, 5, 10, 14, 0, tzinfo=timezone.utc)


@pytest.fixture
def seeded(fake_db):
    fake_db.registrations.docs.append({
        "registration_id": "reg-1",
        "status": "Approved",
        "sca_rego_no": "SCA-100",
        "hull_id_number": "H-1",
        "craft_make": "Yamaha",
        "owners": [{"role": "Primary", "first_name": "Mary", "surname": "Kila"}],
    })
    fake_db.users.docs.append({"user_id": "insp-a", "email": "a@sca.gov.pg", "display_name": "Inspector A"})
    return fake_db


def _create(item_ids=("UNREG_CRAFT", "NO_SAFETY_EQUIP"), issue_now=False, registration_id="reg-1"):
    return InfringementCreate(
        registration_id=registration_id,
        infringement_date=WHEN,
        location_description="Ela Beach",
        items=[InfringementItemSelection(item_id=i) for i in item_ids],
        issue_now=issue_now,
    )


def test_catalogue_lists_every_item_with_points():
    items = infringement_service.catalogue_items()
    assert len(items) == 9
    assert {"item_id": "ENV_POLLUTION", "description": "Discharging pollutants into water", "points": 50} in items


def test_build_items_rejects_unknown_and_duplicate_ids():
    with pytest.raises(RecordValidationError):
        infringement_service.build_items([InfringementItemSelection(item_id="JAYWALKING")])
    with pytest.raises(RecordValidationError):
        infringement_service.build_items([
            InfringementItemSelection(item_id="OVERLOADING"),
            InfringementItemSelection(item_id="OVERLOADING"),
        ])


@pytest.mark.asyncio
async def test_create_draft_snapshots_registration_and_issuer(seeded):
    ctx = make_ctx(UserRole.INSPECTOR, user_id="insp-a", display_name="Inspector A")
    doc = await infringement_service.create_infringement(ctx, _create())

    assert doc["status"] == "Draft"
    assert doc["total_points"] == 50
    assert doc["registration_ref"] == DBRef("registrations", "reg-1")
    assert doc["registration_data"]["sca_rego_no"] == "SCA-100"
    assert doc["registration_data"]["owner_name"] == "Mary Kila"
    assert doc["issued_by_data"] == {"id": "insp-a", "display_name": "Inspector A"}
    assert doc["payment_due_date"] is None


@pytest.mark.asyncio
async def test_unknown_registration_is_not_found(seeded):
    with pytest.raises(RecordNotFoundError):
        await infringement_service.create_infringement(make_ctx(), _create(registration_id="nope"))
    assert seeded.infringements.docs == []


@pytest.mark.asyncio
async def test_issue_now_sets_payment_due_date(seeded):
    before = datetime.now(timezone.utc)
    doc = await infringement_service.create_infringement(make_ctx(UserRole.INSPECTOR, user_id="insp-a"), _create(issue_now=True))

    assert doc["status"] == "Issued"
    stored = seeded.infringements.docs[0]
    assert stored["status"] == "Issued"
    due = stored["payment_due_date"]
    expected = before + timedelta(days=infringement_service.INFRINGEMENT_PAYMENT_DAYS)
    assert expected <= due <= expected + timedelta(minutes=1)


@pytest.mark.asyncio
async def test_edit_recomputes_points_only_in_draft(seeded):
    ctx = make_ctx(UserRole.INSPECTOR, user_id="insp-a")
    doc = await infringement_service.create_infringement(ctx, _create())
    updated = await infringement_service.update_infringement(ctx, doc["infringement_id"], _create(item_ids=("RECKLESS_OP",)))
    assert updated["total_points"] == 40
    assert seeded.infringements.docs[0]["infringement_items"][0]["item_id"] == "RECKLESS_OP"

    await infringement_service.issue_infringement(ctx, doc["infringement_id"])
    with pytest.raises(TransitionNotAllowedError):
        await infringement_service.update_infringement(ctx, doc["infringement_id"], _create())


@pytest.mark.asyncio
async def test_full_lifecycle_to_paid(seeded):
    officer = make_ctx(UserRole.INSPECTOR, user_id="insp-a")
    registrar = make_ctx(UserRole.REGISTRAR, user_id="reg-1")
    doc = await infringement_service.create_infringement(officer, _create(issue_now=True))
    infringement_id = doc["infringement_id"]

    with pytest.raises(TransitionNotAllowedError):
        await infringement_service.approve_infringement(officer, infringement_id)

    await infringement_service.start_review(make_ctx(UserRole.SUPERVISOR), infringement_id)
    approved = await infringement_service.approve_infringement(registrar, infringement_id)
    assert approved["status"] == "Approved"

    payment = PaymentDetails(receipt_number="RC-9", payment_date=WHEN, payment_method="Card", amount_paid=150.0)
    paid = await infringement_service.mark_paid(registrar, infringement_id, payment)
    assert paid["status"] == "Paid"
    stored = seeded.infringements.docs[0]
    assert stored["payment_details"]["payment_method"] == "Card"
    assert stored["paid_at"] is not None

    with pytest.raises(TransitionNotAllowedError):
        await infringement_service.void_infringement(make_ctx(UserRole.ADMIN), infringement_id, "mistake")


@pytest.mark.asyncio
async def test_void_requires_reason_and_admin_after_approval(seeded):
    doc = await infringement_service.create_infringement(make_ctx(), _create(issue_now=True))
    infringement_id = doc["infringement_id"]
    await infringement_service.approve_infringement(make_ctx(UserRole.REGISTRAR), infringement_id)

    with pytest.raises(RecordValidationError):
        await infringement_service.void_infringement(make_ctx(UserRole.ADMIN), infringement_id, " ")
    with pytest.raises(TransitionNotAllowedError):
        await infringement_service.void_infringement(make_ctx(UserRole.REGISTRAR), infringement_id, "Wrong craft")

    voided = await infringement_service.void_infringement(make_ctx(UserRole.ADMIN), infringement_id, "Wrong craft")
    assert voided["status"] == "Voided"
    assert seeded.infringements.docs[0]["void_reason"] == "Wrong craft"


@pytest.mark.asyncio
async def test_inspectors_list_only_their_own_notices(seeded):
    mine = await infringement_service.create_infringement(make_ctx(UserRole.INSPECTOR, user_id="insp-a"), _create())
    await infringement_service.create_infringement(make_ctx(UserRole.INSPECTOR, user_id="insp-b"), _create())

    listed = await infringement_service.list_infringements(make_ctx(UserRole.INSPECTOR, user_id="insp-a"))
    assert [i["infringement_id"] for i in listed] == [mine["infringement_id"]]
    assert listed[0]["allowed_actions"] == ["Edit", "Issue"]
    assert listed[0]["issued_by_ref"] == "insp-a"

    assert len(await infringement_service.list_infringements(make_ctx(UserRole.SUPERVISOR))) == 2


@pytest.mark.asyncio
async def test_detail_resolves_live_projections(seeded):
    doc = await infringement_service.create_infringement(make_ctx(UserRole.INSPECTOR, user_id="insp-a"), _create())
    detail = await infringement_service.get_infringement_detail(make_ctx(UserRole.REGISTRAR), doc["infringement_id"])

    assert detail["registration"]["resolved"] is True
    assert detail["registration"]["sca_rego_no"] == "SCA-100"
    assert detail["issued_by"]["display_name"] == "Inspector A"
    assert detail["approved_by"] is None


@pytest.mark.asyncio
async def test_inspectors_cannot_open_notices_issued_by_others(seeded):
    doc = await infringement_service.create_infringement(make_ctx(UserRole.INSPECTOR, user_id="insp-a"), _create())

    own = await infringement_service.get_infringement_detail(
        make_ctx(UserRole.INSPECTOR, user_id="insp-a"), doc["infringement_id"]
    )
    assert own["infringement_id"] == doc["infringement_id"]

    with pytest.raises(RecordNotFoundError):
        await infringement_service.get_infringement_detail(
            make_ctx(UserRole.INSPECTOR, user_id="insp-b"), doc["infringement_id"]
        )

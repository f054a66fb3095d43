import asyncio
import logging
import uuid

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from onboarding.db_models import Farmer
from onboarding.services import FarmerRecordRef, FarmerRegistration


logger = logging.getLogger(__name__)

_PROFILE_FIELDS = (
    "first_name",
    "last_name",
    "email",
    "date_of_birth",
    "gender",
    "street_address",
    "city",
    "state",
    "postal_code",
    "country",
    "land_ownership_type",
)


def new_farmer_id() -> str:
    return f"FMR{uuid.uuid4().hex[:12].upper()}"


def _to_ref(farmer: Farmer, *, existed: bool) -> FarmerRecordRef:
    return FarmerRecordRef(
        id=farmer.id,
        account_id=farmer.account_id,
        org_id=farmer.org_id,
        phone_number=farmer.phone_number,
        created_by_operation_id=farmer.created_by_operation_id,
        source_record_index=farmer.source_record_index,
        existed=existed,
    )


def get_farmer_by_phone(db: Session, phone_number: str, org_id: str) -> Farmer | None:
    stmt = select(Farmer).where(Farmer.phone_number == phone_number, Farmer.org_id == org_id)
    return db.execute(stmt).scalar_one_or_none()


def get_or_create_farmer(db: Session, request: FarmerRegistration) -> tuple[Farmer, bool]:
    existing = get_farmer_by_phone(db, request.phone_number, request.org_id)
    if existing is not None:
        if request.refresh_existing:
            for name in _PROFILE_FIELDS:
                value = getattr(request, name)
                if value:
                    setattr(existing, name, value)
            existing.custom_fields = {**(existing.custom_fields or {}), **request.custom_fields}
            db.commit()
        return existing, False

    farmer = Farmer(
        id=new_farmer_id(),
        account_id=request.account_id,
        org_id=request.org_id,
        phone_number=request.phone_number,
        custom_fields=dict(request.custom_fields),
        created_by_operation_id=request.operation_id,
        source_record_index=request.record_index,
        **{name: getattr(request, name) for name in _PROFILE_FIELDS},
    )
    db.add(farmer)
    try:
        db.commit()
    except IntegrityError:
        # Unique (phone_number, org_id) settles concurrent registrations.
        db.rollback()
        existing = get_farmer_by_phone(db, request.phone_number, request.org_id)
        if existing:
            return existing, False
        raise

    db.refresh(farmer)
    return farmer, True


class DatabaseFarmerRegistry:
    """Farmer registry backed by the ``farmers`` table.

    Session work runs in a worker thread so a slow database never blocks the event loop.
    """

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self.session_factory = session_factory

    def _find(self, phone_number: str, org_id: str) -> FarmerRecordRef | None:
        with self.session_factory() as db:
            farmer = get_farmer_by_phone(db, phone_number, org_id)
            return _to_ref(farmer, existed=True) if farmer else None

    def _create(self, request: FarmerRegistration) -> FarmerRecordRef:
        with self.session_factory() as db:
            farmer, created = get_or_create_farmer(db, request)
            if created:
                logger.debug(
                    "farmer registered",
                    extra={"farmer_id": farmer.id, "org_id": farmer.org_id, "operation_id": request.operation_id},
                )
            return _to_ref(farmer, existed=not created)

    async def find_farmer(self, phone_number: str, org_id: str) -> FarmerRecordRef | None:
        return await asyncio.to_thread(self._find, phone_number, org_id)

    async def create_farmer(self, request: FarmerRegistration) -> FarmerRecordRef:
        return await asyncio.to_thread(self._create, request)

"""Registry core: the operations that keep a service and its child rows in step.

Each public method is one atomic unit of work against the ``EntityStore``.
Child collections are never patched: update deletes every capability,
category and metadata row of the service and inserts the new set in the
same transaction, so readers see either the old collections or the new
ones and never a mixture or an empty window.
"""

import sys
import uuid
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple

from sqlalchemy import delete, or_, select
from sqlalchemy.orm import Session, selectinload

from ..errors import NotFound, ValidationError
from .models import (
    Capability,
    Category,
    MetadataItem,
    RegisterRequest,
    Service,
    ServiceRecord,
)
from .store import EntityStore


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


_CHILD_TABLES = (Capability, Category, MetadataItem)


def _with_children(stmt):
    return stmt.options(
        selectinload(ServiceRecord.capabilities),
        selectinload(ServiceRecord.categories),
        selectinload(ServiceRecord.metadata_items),
    )


def _check(request: RegisterRequest) -> None:
    if not request.name or not request.url:
        raise ValidationError("Missing required fields: 'name' and 'url' must be non-empty")


def _child_rows(service_id: str, request: RegisterRequest) -> list:
    rows: list = []
    rows.extend(
        Capability(service_id=service_id, name=name, enabled=enabled)
        for name, enabled in request.capabilities.items()
    )
    rows.extend(Category(service_id=service_id, name=name) for name in request.categories)
    rows.extend(
        MetadataItem(service_id=service_id, key=key, value=value)
        for key, value in request.metadata.items()
    )
    return rows


class Registry:
    """Database-backed service registry."""

    def __init__(self, store: EntityStore, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Internal helpers (always called inside an open unit of work)
    # ------------------------------------------------------------------

    def _load(self, session: Session, service_id: str) -> ServiceRecord:
        """Fetch a service with fresh child collections, or raise NotFound."""
        stmt = _with_children(
            select(ServiceRecord).where(ServiceRecord.id == service_id)
        ).execution_options(populate_existing=True)
        record = session.scalars(stmt).one_or_none()
        if record is None:
            raise NotFound(service_id)
        return record

    def _lock(self, session: Session, service_id: str) -> ServiceRecord:
        """Lock the service row for the rest of the unit, or raise NotFound."""
        stmt = select(ServiceRecord).where(ServiceRecord.id == service_id).with_for_update()
        record = session.scalars(stmt).one_or_none()
        if record is None:
            raise NotFound(service_id)
        return record

    def _advance(self, record: ServiceRecord) -> None:
        # last_seen never moves backwards, even if the wall clock does
        now = self.now()
        record.last_seen = max(now, record.last_seen, record.created_at)

    @staticmethod
    def _delete_children(session: Session, service_id: str) -> None:
        for table in _CHILD_TABLES:
            session.execute(
                delete(table).where(table.service_id == service_id),
                execution_options={"synchronize_session": False},
            )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def register(self, request: RegisterRequest) -> Service:
        """Create a new service with its capabilities, categories and metadata."""
        _check(request)
        service_id = str(uuid.uuid4())
        now = self.now()

        with self.store.unit_of_work(write=True) as session:
            session.add(ServiceRecord(
                id=service_id,
                name=request.name,
                description=request.description,
                url=request.url,
                created_at=now,
                last_seen=now,
            ))
            # Parent row must exist before its children reference it
            session.flush()
            session.add_all(_child_rows(service_id, request))
            session.flush()
            service = Service.from_record(self._load(session, service_id))

        print(f"[registry] Registered service: {service.name} ({service.id})", file=sys.stderr)
        return service

    def get(self, service_id: str) -> Service:
        with self.store.unit_of_work() as session:
            return Service.from_record(self._load(session, service_id))

    def list_services(self, category: Optional[str] = None) -> List[Service]:
        """List all services, optionally only those tagged with *category*."""
        with self.store.unit_of_work() as session:
            stmt = _with_children(select(ServiceRecord))
            if category:
                service_ids = session.scalars(
                    select(Category.service_id).where(Category.name == category).distinct()
                ).all()
                if not service_ids:
                    return []
                stmt = stmt.where(ServiceRecord.id.in_(service_ids))
            return [Service.from_record(r) for r in session.scalars(stmt).all()]

    def search(self, text: str) -> List[Service]:
        """Case-insensitive substring match on name or description."""
        if not text:
            raise ValidationError("Search text must not be empty")
        with self.store.unit_of_work() as session:
            stmt = _with_children(select(ServiceRecord)).where(
                or_(
                    ServiceRecord.name.icontains(text, autoescape=True),
                    ServiceRecord.description.icontains(text, autoescape=True),
                )
            )
            return [Service.from_record(r) for r in session.scalars(stmt).all()]

    def update(self, service_id: str, request: RegisterRequest) -> Service:
        """Overwrite a service and fully replace its child collections."""
        _check(request)
        with self.store.unit_of_work(write=True) as session:
            record = self._lock(session, service_id)
            record.name = request.name
            record.description = request.description
            record.url = request.url
            self._advance(record)

            self._delete_children(session, service_id)
            session.add_all(_child_rows(service_id, request))
            session.flush()
            service = Service.from_record(self._load(session, service_id))

        print(f"[registry] Updated service: {service.name} ({service.id})", file=sys.stderr)
        return service

    def heartbeat(self, service_id: str) -> None:
        """Refresh ``last_seen`` for a service."""
        with self.store.unit_of_work(write=True) as session:
            self._advance(self._lock(session, service_id))

    def unregister(self, service_id: str, stale_before: Optional[datetime] = None) -> bool:
        """Delete a service and every row it owns.

        With *stale_before*, the delete only happens if ``last_seen`` is still
        older than that cutoff once the row is locked; a heartbeat that landed
        in the meantime wins and ``False`` is returned.
        """
        with self.store.unit_of_work(write=True) as session:
            record = self._lock(session, service_id)
            if stale_before is not None and record.last_seen >= stale_before:
                return False
            name = record.name
            self._delete_children(session, service_id)
            session.delete(record)

        print(f"[registry] Unregistered service: {name} ({service_id})", file=sys.stderr)
        return True

    def list_stale(self, cutoff: datetime) -> List[Tuple[str, str]]:
        """Return ``(id, name)`` of services last seen before *cutoff*."""
        with self.store.unit_of_work() as session:
            rows = session.execute(
                select(ServiceRecord.id, ServiceRecord.name).where(ServiceRecord.last_seen < cutoff)
            ).all()
        return [(row.id, row.name) for row in rows]

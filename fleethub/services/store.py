"""
Entity store over a SQLAlchemy session.

Loads return None when the row is absent. Writes commit once and raise
PersistenceFailure after rolling the session back.
"""
import uuid
from typing import Optional

import structlog
from fastapi import Depends
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload
from sqlalchemy.orm.exc import StaleDataError

from ..db import get_db
from ..errors import PersistenceFailure
from ..models.models import (
    Branch,
    Company,
    User,
    Vehicle,
    WorkOrder,
    WorkOrderApproval,
    WorkOrderPart,
    WorkOrderService,
    WorkOrderTimeEntry,
)

logger = structlog.get_logger(__name__)


def _uuid(value) -> Optional[uuid.UUID]:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (ValueError, TypeError):
        return None


class EntityStore:
    def __init__(self, db: Session):
        self.db = db

    # ---------- loads ----------
    def load_work_order(self, work_order_id) -> Optional[WorkOrder]:
        wid = _uuid(work_order_id)
        if wid is None:
            return None
        return (
            self.db.query(WorkOrder)
            .options(
                selectinload(WorkOrder.services),
                selectinload(WorkOrder.parts),
                selectinload(WorkOrder.approvals),
                selectinload(WorkOrder.time_entries),
            )
            .filter(WorkOrder.id == wid)
            .first()
        )

    def load_vehicle(self, vehicle_id) -> Optional[Vehicle]:
        return self._get(Vehicle, vehicle_id)

    def load_branch(self, branch_id) -> Optional[Branch]:
        return self._get(Branch, branch_id)

    def load_company(self, company_id) -> Optional[Company]:
        return self._get(Company, company_id)

    def load_user(self, user_id) -> Optional[User]:
        return self._get(User, user_id)

    def work_order_number_taken(self, number: str) -> bool:
        return self.db.query(WorkOrder.id).filter(WorkOrder.work_order_number == number).first() is not None

    def user_has_activity(self, user_id) -> bool:
        """True when any work order references the user."""
        uid = _uuid(user_id)
        checks = (
            (WorkOrder.id, or_(WorkOrder.created_by == uid, WorkOrder.assigned_to_id == uid, WorkOrder.last_modified_by == uid)),
            (WorkOrderTimeEntry.id, WorkOrderTimeEntry.user_id == uid),
            (WorkOrderService.id, WorkOrderService.completed_by == uid),
            (WorkOrderPart.id, WorkOrderPart.installed_by == uid),
            (WorkOrderApproval.id, or_(WorkOrderApproval.requested_by == uid, WorkOrderApproval.resolved_by == uid)),
        )
        return any(self.db.query(column).filter(condition).first() is not None for column, condition in checks)

    def _get(self, model, entity_id):
        eid = _uuid(entity_id)
        if eid is None:
            return None
        return self.db.get(model, eid)

    # ---------- writes ----------
    def add(self, entity) -> None:
        self.db.add(entity)

    def save_work_order(self, wo: WorkOrder) -> WorkOrder:
        self.db.add(wo)
        self.commit(entity="work_order", entity_id=wo.id)
        self.db.refresh(wo)
        return wo

    def delete_work_order(self, wo: WorkOrder) -> None:
        self.db.delete(wo)
        self.commit(entity="work_order", entity_id=wo.id)

    def save(self, entity, entity_name: str):
        self.db.add(entity)
        self.commit(entity=entity_name, entity_id=getattr(entity, "id", None))
        self.db.refresh(entity)
        return entity

    def delete(self, entity, entity_name: str) -> None:
        self.db.delete(entity)
        self.commit(entity=entity_name, entity_id=getattr(entity, "id", None))

    def commit(self, entity: str, entity_id=None) -> None:
        try:
            self.db.commit()
        except StaleDataError as e:
            self._fail("concurrent-modification", e, entity, entity_id)
        except IntegrityError as e:
            self._fail("integrity-conflict", e, entity, entity_id)
        except SQLAlchemyError as e:
            self._fail("store-unavailable", e, entity, entity_id)

    def rollback(self) -> None:
        self.db.rollback()

    def _fail(self, reason: str, error: Exception, entity: str, entity_id) -> None:
        self.db.rollback()
        logger.warning(
            "work_order_persist_failed" if entity == "work_order" else "persist_failed",
            reason=reason,
            entity=entity,
            entity_id=str(entity_id) if entity_id else None,
            error=str(error.__class__.__name__),
        )
        raise PersistenceFailure(reason, str(error)) from error


def get_store(db: Session = Depends(get_db)) -> EntityStore:
    return EntityStore(db)

import logging
from typing import List, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from feeledger import audit, models, schemas
from feeledger.auth import Principal
from feeledger.errors import NotFoundError, StateConflictError

logger = logging.getLogger("fee-ledger")


def _build_component(comp: schemas.FeeComponentIn, index: int) -> models.FeeComponent:
    component = models.FeeComponent(
        name=comp.name.strip(),
        fee_type=comp.fee_type,
        description=comp.description,
        amount=comp.amount,
        frequency=comp.frequency.strip().upper(),
        is_mandatory=comp.is_mandatory,
        due_date=comp.due_date,
        allow_partial_payment=comp.allow_partial_payment,
        late_fee_applicable=comp.late_fee_applicable,
        late_fee_amount=comp.late_fee_amount,
        late_fee_percentage=comp.late_fee_percentage,
        display_order=index,
    )
    for inst in comp.installments:
        component.installments.append(
            models.Installment(
                installment_number=inst.installment_number,
                name=inst.name,
                amount=inst.amount,
                due_date=inst.due_date,
            )
        )
    return component


def create_fee_structure(db: Session, principal: Principal, payload: schemas.FeeStructureCreate) -> models.FeeStructure:
    if payload.academic_unit_id:
        _get_unit(db, principal.school_id, payload.academic_unit_id)

    structure = models.FeeStructure(
        school_id=principal.school_id,
        name=payload.name.strip(),
        description=payload.description,
        academic_year_id=payload.academic_year_id,
        academic_unit_id=payload.academic_unit_id,
        course_id=payload.course_id,
        created_by=principal.user_id,
        is_active=True,
        is_locked=False,
    )
    for index, comp in enumerate(payload.components):
        structure.components.append(_build_component(comp, index))
    db.add(structure)
    db.flush()

    audit.record(
        db, principal, principal.school_id, "FEE_STRUCTURE", structure.id, "CREATED",
        f"Fee structure \"{structure.name}\" created with {len(structure.components)} components",
        new_data={"name": structure.name, "academic_year_id": structure.academic_year_id,
                  "total_amount": str(structure.total_amount)},
    )
    logger.info("Created fee structure id=%s school=%s total=%s", structure.id, structure.school_id, structure.total_amount)
    return structure


def _get_unit(db: Session, school_id: str, unit_id: str) -> models.AcademicUnit:
    unit = db.execute(
        select(models.AcademicUnit).where(models.AcademicUnit.id == unit_id, models.AcademicUnit.school_id == school_id)
    ).scalar_one_or_none()
    if unit is None:
        raise NotFoundError("Academic unit not found")
    return unit


def get_fee_structure(db: Session, school_id: str, structure_id: str, for_update: bool = False) -> models.FeeStructure:
    stmt = select(models.FeeStructure).where(
        models.FeeStructure.id == structure_id,
        models.FeeStructure.school_id == school_id,
    )
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    structure = db.execute(stmt).scalar_one_or_none()
    if structure is None:
        raise NotFoundError("Fee structure not found")
    return structure


def update_fee_structure(db: Session, principal: Principal, structure_id: str,
                         payload: schemas.FeeStructureUpdate) -> models.FeeStructure:
    structure = get_fee_structure(db, principal.school_id, structure_id, for_update=True)
    changes = payload.model_dump(exclude_unset=True)
    if structure.is_locked and set(changes) - {"is_active"}:
        raise StateConflictError("Cannot modify locked fee structure. Students are already assigned.")
    if changes.get("academic_unit_id"):
        _get_unit(db, principal.school_id, changes["academic_unit_id"])

    previous = audit.snapshot(structure)
    if "name" in changes:
        structure.name = payload.name.strip()
    for key in ("description", "is_active", "academic_unit_id", "course_id"):
        if key in changes:
            setattr(structure, key, changes[key])
    if payload.components is not None:
        structure.components.clear()
        db.flush()
        for index, comp in enumerate(payload.components):
            structure.components.append(_build_component(comp, index))
    db.flush()

    audit.record(
        db, principal, principal.school_id, "FEE_STRUCTURE", structure.id, "UPDATED",
        f"Fee structure \"{structure.name}\" updated ({', '.join(sorted(changes)) or 'no changes'})",
        previous_data=previous,
        new_data=audit.snapshot(structure),
    )
    logger.info("Updated fee structure id=%s fields=%s", structure.id, sorted(changes))
    return structure


def delete_fee_structure(db: Session, principal: Principal, structure_id: str):
    structure = get_fee_structure(db, principal.school_id, structure_id, for_update=True)
    assigned = db.execute(
        select(func.count(models.StudentFee.id)).where(models.StudentFee.fee_structure_id == structure.id)
    ).scalar_one()
    if assigned:
        raise StateConflictError("Cannot delete fee structure with assigned students. Deactivate it instead.")

    previous = audit.snapshot(structure)
    db.delete(structure)
    db.flush()
    audit.record(
        db, principal, principal.school_id, "FEE_STRUCTURE", structure_id, "DELETED",
        f"Fee structure \"{previous['name']}\" deleted",
        previous_data=previous,
    )
    logger.info("Deleted fee structure id=%s school=%s", structure_id, principal.school_id)


def list_fee_structures(
    db: Session,
    school_id: str,
    academic_year_id: Optional[str] = None,
    academic_unit_id: Optional[str] = None,
    is_active: Optional[bool] = None,
) -> List[models.FeeStructure]:
    stmt = select(models.FeeStructure).where(models.FeeStructure.school_id == school_id)
    if academic_year_id:
        stmt = stmt.where(models.FeeStructure.academic_year_id == academic_year_id)
    if is_active is not None:
        stmt = stmt.where(models.FeeStructure.is_active.is_(is_active))
    if academic_unit_id:
        # a section also sees its parent class's structures and school-wide ones
        unit_ids = [academic_unit_id]
        unit = db.get(models.AcademicUnit, academic_unit_id)
        if unit is not None and unit.parent_id:
            unit_ids.append(unit.parent_id)
        stmt = stmt.where(or_(
            models.FeeStructure.academic_unit_id.in_(unit_ids),
            models.FeeStructure.academic_unit_id.is_(None),
        ))
    return list(db.execute(stmt.order_by(models.FeeStructure.created_at.desc())).scalars())

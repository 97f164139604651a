from decimal import Decimal
from datetime import date, datetime
from typing import Optional

from sqlalchemy import inspect
from sqlalchemy.orm import Session

from feeledger import models
from feeledger.auth import Principal


def snapshot(obj) -> dict:
    """Column values of an ORM row as JSON-safe primitives."""
    data = {}
    for attr in inspect(obj).mapper.column_attrs:
        value = getattr(obj, attr.key)
        if isinstance(value, Decimal):
            value = str(value)
        elif isinstance(value, (date, datetime)):
            value = value.isoformat()
        data[attr.key] = value
    return data


def record(
    db: Session,
    principal: Optional[Principal],
    school_id: str,
    entity_type: str,
    entity_id: str,
    action: str,
    description: str,
    previous_data: Optional[dict] = None,
    new_data: Optional[dict] = None,
) -> models.FinanceAuditLog:
    entry = models.FinanceAuditLog(
        school_id=school_id,
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        description=description,
        previous_data=previous_data,
        new_data=new_data,
        user_id=principal.user_id if principal else None,
        user_name=principal.display_name if principal else None,
        user_role=principal.role if principal else None,
    )
    db.add(entry)
    return entry

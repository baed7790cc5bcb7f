from __future__ import annotations

from datetime import date, time

from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from horarios.db import Base
from horarios.models import (
    Contract,
    ContractAmendment,
    DomainEvent,
    Modality,
    ModalityCode,
    Shift,
)


def make_sqlite_session_factory() -> sessionmaker:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=True)


def seed_modalities(db: Session) -> dict[ModalityCode, int]:
    rows = [
        Modality(id=1, code=ModalityCode.ON_SITE, name="Presencial"),
        Modality(id=2, code=ModalityCode.REMOTE, name="Teletrabajo"),
        Modality(id=3, code=ModalityCode.HYBRID, name="Hibrido"),
    ]
    db.add_all(rows)
    db.commit()
    return {row.code: row.id for row in rows}


def add_shift(
    db: Session,
    *,
    name: str,
    start: time,
    end: time,
    break_start: time | None = None,
    break_end: time | None = None,
    center_id: int = 1,
) -> Shift:
    shift = Shift(
        center_id=center_id,
        name=name,
        start_time=start,
        end_time=end,
        break_start_time=break_start,
        break_end_time=break_end,
        color="#FB7D16",
        is_active=True,
    )
    db.add(shift)
    db.commit()
    db.refresh(shift)
    return shift


def add_contract(
    db: Session,
    *,
    employee_id: int,
    valid_from: date,
    valid_to: date | None = None,
    schedule_template_id: int | None = None,
    center_id: int = 1,
) -> Contract:
    contract = Contract(
        employee_id=employee_id,
        center_id=center_id,
        valid_from=valid_from,
        valid_to=valid_to,
        schedule_template_id=schedule_template_id,
    )
    db.add(contract)
    db.commit()
    db.refresh(contract)
    return contract


def add_amendment(
    db: Session,
    *,
    contract_id: int,
    valid_from: date,
    valid_to: date | None = None,
    schedule_template_id: int | None = None,
) -> ContractAmendment:
    amendment = ContractAmendment(
        contract_id=contract_id,
        valid_from=valid_from,
        valid_to=valid_to,
        schedule_template_id=schedule_template_id,
    )
    db.add(amendment)
    db.commit()
    db.refresh(amendment)
    return amendment


def event_types(db: Session) -> list[str]:
    return list(db.scalars(select(DomainEvent.event_type).order_by(DomainEvent.id.asc())).all())

"""
Relational store for the equipment catalog, meter readings and fuel events.

One ``readings`` row = one (equipment, day) observation. Storage does not
enforce uniqueness of the pair; registration checks it before inserting.
Fuel events carry the vehicle code as typed by the pump attendant plus its
normalized form, which is what lookups join on.
"""

import logging
from datetime import date, datetime

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    create_engine,
    select,
)
from sqlalchemy.orm import declarative_base, sessionmaker

from fleet_readings.models import Equipment, FuelEvent, Reading, SourceTag
from fleet_readings.normalize import format_time, normalize_code
from fleet_readings.settings import DATA_DIR, DEFAULT_DATABASE_URL

logger = logging.getLogger(__name__)

Base = declarative_base()

READING_PATCH_FIELDS = {
    "hour_meter",
    "odometer",
    "hour_meter_previous",
    "odometer_previous",
    "operator",
    "observation",
}


class EquipmentRow(Base):
    __tablename__ = "equipment"

    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(64), nullable=False)
    code_key = Column(String(64), nullable=False, index=True)
    name = Column(String(255), nullable=False, default="")
    category = Column(String(128), nullable=False, default="")
    description = Column(String(255), nullable=False, default="")
    company = Column(String(128), nullable=False, default="")
    active = Column(Boolean, nullable=False, default=True)


class ReadingRow(Base):
    __tablename__ = "readings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    equipment_id = Column(Integer, ForeignKey("equipment.id"), nullable=False)
    reading_date = Column(Date, nullable=True)
    hour_meter = Column(Float, nullable=True)
    odometer = Column(Float, nullable=True)
    hour_meter_previous = Column(Float, nullable=True)
    odometer_previous = Column(Float, nullable=True)
    operator = Column(String(255), nullable=False, default="")
    observation = Column(Text, nullable=False, default="")
    source = Column(String(32), nullable=False, default=SourceTag.DB_READING.value)
    created_at = Column(DateTime, nullable=False, default=datetime.now)

    __table_args__ = (
        Index("ix_readings_equipment_date", "equipment_id", "reading_date"),
    )


class FuelEventRow(Base):
    __tablename__ = "fuel_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    vehicle_code = Column(String(64), nullable=False)
    vehicle_key = Column(String(64), nullable=False, index=True)
    event_date = Column(Date, nullable=True)
    event_time = Column(String(8), nullable=False, default="")
    hour_meter = Column(Float, nullable=True)
    odometer = Column(Float, nullable=True)
    operator = Column(String(255), nullable=False, default="")
    created_at = Column(DateTime, nullable=False, default=datetime.now)


def _to_equipment(row: EquipmentRow) -> Equipment:
    return Equipment(
        id=row.id,
        code=row.code,
        name=row.name or "",
        category=row.category or "",
        description=row.description or "",
        company=row.company or "",
        active=bool(row.active),
    )


def _to_reading(row: ReadingRow) -> Reading:
    try:
        source = SourceTag(row.source)
    except ValueError:
        source = SourceTag.DB_READING

    return Reading(
        id=row.id,
        equipment_id=row.equipment_id,
        reading_date=row.reading_date,
        hour_meter=row.hour_meter,
        odometer=row.odometer,
        hour_meter_previous=row.hour_meter_previous,
        odometer_previous=row.odometer_previous,
        operator=row.operator or "",
        observation=row.observation or "",
        source=source,
        created_at=row.created_at,
    )


def _to_fuel_event(row: FuelEventRow) -> FuelEvent:
    return FuelEvent(
        id=row.id,
        vehicle_code=row.vehicle_code,
        event_date=row.event_date,
        event_time=row.event_time or "",
        hour_meter=row.hour_meter,
        odometer=row.odometer,
        operator=row.operator or "",
    )


def create_session_factory(database_url: str = DEFAULT_DATABASE_URL):
    if database_url == DEFAULT_DATABASE_URL:
        DATA_DIR.mkdir(parents=True, exist_ok=True)

    engine = create_engine(database_url, pool_pre_ping=True, future=True)
    Base.metadata.create_all(bind=engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


class ReadingStore:
    def __init__(self, session_factory):
        self._session_factory = session_factory

    @classmethod
    def from_url(cls, database_url: str = DEFAULT_DATABASE_URL) -> "ReadingStore":
        return cls(create_session_factory(database_url))

    # ===== Equipment catalog =====

    def add_equipment(self, code: str, name: str = "", category: str = "",
                      description: str = "", company: str = "", active: bool = True) -> int:
        with self._session_factory() as session:
            row = EquipmentRow(
                code=code.strip(),
                code_key=normalize_code(code),
                name=name,
                category=category,
                description=description,
                company=company,
                active=active,
            )
            session.add(row)
            session.commit()
            return row.id

    def list_equipment(self) -> list[Equipment]:
        with self._session_factory() as session:
            rows = session.scalars(select(EquipmentRow).order_by(EquipmentRow.code)).all()
            return [_to_equipment(row) for row in rows]

    def list_active_equipment(self) -> list[Equipment]:
        with self._session_factory() as session:
            rows = session.scalars(
                select(EquipmentRow)
                .where(EquipmentRow.active.is_(True))
                .order_by(EquipmentRow.code)
            ).all()
            return [_to_equipment(row) for row in rows]

    # ===== Readings =====

    def get_latest_reading(self, equipment_id: int) -> Reading | None:
        with self._session_factory() as session:
            row = session.scalars(
                select(ReadingRow)
                .where(ReadingRow.equipment_id == equipment_id)
                .order_by(
                    ReadingRow.reading_date.desc().nulls_last(),
                    ReadingRow.created_at.desc(),
                    ReadingRow.id.desc(),
                )
                .limit(1)
            ).first()
            return _to_reading(row) if row else None

    def list_readings(self, since: date | None = None, equipment_id: int | None = None) -> list[Reading]:
        """All readings in insertion order, optionally from ``since`` onwards."""

        with self._session_factory() as session:
            query = select(ReadingRow)
            if since is not None:
                query = query.where(ReadingRow.reading_date >= since)
            if equipment_id is not None:
                query = query.where(ReadingRow.equipment_id == equipment_id)
            rows = session.scalars(query.order_by(ReadingRow.id)).all()
            return [_to_reading(row) for row in rows]

    def has_reading(self, equipment_id: int, day: date) -> bool:
        with self._session_factory() as session:
            found = session.scalars(
                select(ReadingRow.id)
                .where(ReadingRow.equipment_id == equipment_id, ReadingRow.reading_date == day)
                .limit(1)
            ).first()
            return found is not None

    def insert_reading(self, reading: Reading) -> int:
        with self._session_factory() as session:
            row = ReadingRow(
                equipment_id=reading.equipment_id,
                reading_date=reading.reading_date,
                hour_meter=reading.hour_meter,
                odometer=reading.odometer,
                hour_meter_previous=reading.hour_meter_previous,
                odometer_previous=reading.odometer_previous,
                operator=reading.operator or "",
                observation=reading.observation or "",
                source=SourceTag(reading.source).value,
                created_at=reading.created_at or datetime.now(),
            )
            session.add(row)
            session.commit()
            logger.info(
                "Inserted reading %s for equipment %s on %s",
                row.id,
                reading.equipment_id,
                reading.reading_date,
            )
            return row.id

    def update_reading(self, reading_id: int, patch: dict) -> None:
        unknown = set(patch) - READING_PATCH_FIELDS
        if unknown:
            raise ValueError(f"Cannot update reading fields: {sorted(unknown)}")

        with self._session_factory() as session:
            row = session.get(ReadingRow, reading_id)
            if row is None:
                raise KeyError(f"Reading {reading_id} not found")
            for name, value in patch.items():
                setattr(row, name, value)
            session.commit()
            logger.info("Updated reading %s: %s", reading_id, sorted(patch))

    # ===== Fuel events =====

    def add_fuel_event(self, event: FuelEvent) -> int:
        with self._session_factory() as session:
            row = FuelEventRow(
                vehicle_code=event.vehicle_code.strip(),
                vehicle_key=normalize_code(event.vehicle_code),
                event_date=event.event_date,
                event_time=format_time(event.event_time),
                hour_meter=event.hour_meter,
                odometer=event.odometer,
                operator=event.operator or "",
            )
            session.add(row)
            session.commit()
            return row.id

    def get_latest_fuel_event(self, equipment_code: str) -> FuelEvent | None:
        with self._session_factory() as session:
            row = session.scalars(
                select(FuelEventRow)
                .where(FuelEventRow.vehicle_key == normalize_code(equipment_code))
                .order_by(
                    FuelEventRow.event_date.desc().nulls_last(),
                    FuelEventRow.event_time.desc(),
                    FuelEventRow.id.desc(),
                )
                .limit(1)
            ).first()
            return _to_fuel_event(row) if row else None

    def list_fuel_events(self, since: date | None = None) -> list[FuelEvent]:
        with self._session_factory() as session:
            query = select(FuelEventRow)
            if since is not None:
                query = query.where(FuelEventRow.event_date >= since)
            rows = session.scalars(query.order_by(FuelEventRow.id)).all()
            return [_to_fuel_event(row) for row in rows]

# hometelemetry/models/readings.py
from sqlalchemy import Boolean, Column, Date, DateTime, Float, Integer, String, UniqueConstraint
from datetime import datetime, timezone

from hometelemetry.core.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SensorReading(Base):
    __tablename__ = "readings"
    __table_args__ = (UniqueConstraint("channel", "timestamp", name="uq_readings_channel_ts"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(String, nullable=False, index=True)     # ISO-8601 UTC
    channel = Column(String, nullable=False, index=True)       # "indoor", "ch3", ...
    room_name = Column(String, nullable=False)
    temperature_c = Column(Float, nullable=False)
    humidity = Column(Float, nullable=True)
    battery = Column(Integer, nullable=True)


class EnergyReading(Base):
    __tablename__ = "energy_readings"
    __table_args__ = (UniqueConstraint("timestamp", "type", name="uq_energy_ts_type"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(String, nullable=False, index=True)     # half-hour slot start, ISO-8601 UTC
    type = Column(String, nullable=False, index=True)          # electricity | gas | electricity_cost | gas_cost
    quantity = Column(Float, nullable=False)                   # kWh, or pence for *_cost
    cost_pence = Column(Float, nullable=True)                  # merged cost on consumption rows
    is_estimated = Column(Boolean, nullable=False, default=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class WaterReading(Base):
    __tablename__ = "water_readings"
    __table_args__ = (UniqueConstraint("reading_date", "reading_type", name="uq_water_date_type"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(String, nullable=False)
    reading_date = Column(Date, nullable=False, index=True)
    consumption_m3 = Column(Float, nullable=False)
    reading_type = Column(String, nullable=False)              # smart | manual | billing | meter
    meter_serial = Column(String, nullable=True)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class MeterPointReading(Base):
    __tablename__ = "meter_point_readings"
    __table_args__ = (UniqueConstraint("reading_date", "reading_time", name="uq_meter_point_date_time"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    reading_date = Column(Date, nullable=False)
    reading_time = Column(String, nullable=False)              # HH:MM
    reading_datetime = Column(DateTime, nullable=False, index=True)
    value_m3 = Column(Float, nullable=False)                   # cumulative meter register
    created_at = Column(DateTime(timezone=True), default=_utcnow)

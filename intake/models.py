"""Core SQLAlchemy models (2.x style) for the runlist intake schema.

Runlists, vehicles, column mappings, make/model aliases, buy box criteria,
registry reference data and the inspections generated from matches.
"""

from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import JSON, Boolean, Date, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class Auction(Base):
    """Auction houses; the scope that partitions mappings and aliases."""
    __tablename__ = "auctions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    requires_vin: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    run_format: Mapped[str] = mapped_column(String(20), default="separate", nullable=False)  # separate | combined
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, nullable=False)


class Runlist(Base):
    """One uploaded batch of vehicles for an auction event."""
    __tablename__ = "runlists"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    auction_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    inspection_date: Mapped[date | None] = mapped_column(Date)
    inspector_id: Mapped[int | None] = mapped_column(Integer)
    state: Mapped[str] = mapped_column(String(30), nullable=False, default="UPLOADED", index=True)
    failed_stage: Mapped[str | None] = mapped_column(String(30))
    error: Mapped[str | None] = mapped_column(Text)
    row_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    vehicle_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    skipped_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    enrichment_failures: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    match_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    work_item_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    uploaded_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    # Relationships
    vehicles: Mapped[list[Vehicle]] = relationship("Vehicle", back_populates="runlist")


class Vehicle(Base):
    """Vehicles created from runlist rows. Never mutated by the pipeline."""
    __tablename__ = "vehicles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    runlist_id: Mapped[int] = mapped_column(
        ForeignKey("runlists.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    vin: Mapped[str | None] = mapped_column(String(17), index=True)
    # None means unresolved, never the registry's literal answer
    make: Mapped[str | None] = mapped_column(String(100), index=True)
    model: Mapped[str | None] = mapped_column(String(100))
    trim: Mapped[str | None] = mapped_column(String(100))
    year: Mapped[int | None] = mapped_column(Integer)
    mileage: Mapped[int | None] = mapped_column(Integer)
    color: Mapped[str | None] = mapped_column(String(50))
    body_type: Mapped[str | None] = mapped_column(String(100))
    engine: Mapped[str | None] = mapped_column(String(100))
    transmission: Mapped[str | None] = mapped_column(String(100))
    auction_price: Mapped[float | None] = mapped_column(Float)
    lane_number: Mapped[str | None] = mapped_column(String(20))
    run_number: Mapped[str | None] = mapped_column(String(20))
    stock_number: Mapped[str | None] = mapped_column(String(50))
    raw_data: Mapped[dict | None] = mapped_column(JSON)  # Original row, verbatim
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, nullable=False)

    # Relationship
    runlist: Mapped[Runlist] = relationship("Runlist", back_populates="vehicles")


class ColumnMapping(Base):
    """Per-auction mapping of canonical field name to source column."""
    __tablename__ = "column_mappings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    auction_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    mapping: Mapped[dict] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, nullable=False)


class VehicleMakeAlias(Base):
    """Make spelling variants. auction_id None means general scope."""
    __tablename__ = "vehicle_make_aliases"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    alias: Mapped[str] = mapped_column(String(100), nullable=False)
    canonical_make: Mapped[str] = mapped_column(String(100), nullable=False)
    auction_id: Mapped[int | None] = mapped_column(Integer, index=True)
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_vehicle_make_aliases_alias_scope", "alias", "auction_id"),
    )


class VehicleModelAlias(Base):
    """Model spelling variants keyed by canonical make."""
    __tablename__ = "vehicle_model_aliases"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    make: Mapped[str] = mapped_column(String(100), nullable=False)
    alias: Mapped[str] = mapped_column(String(100), nullable=False)
    canonical_model: Mapped[str] = mapped_column(String(100), nullable=False)
    auction_id: Mapped[int | None] = mapped_column(Integer, index=True)
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_vehicle_model_aliases_make_alias_scope", "make", "alias", "auction_id"),
    )


class BuyBoxItem(Base):
    """Acquisition criteria owned by a dealer."""
    __tablename__ = "buy_box_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    dealer_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    make: Mapped[str] = mapped_column(String(100), nullable=False)
    model: Mapped[str] = mapped_column(String(100), nullable=False)
    trim: Mapped[str | None] = mapped_column(String(100))
    year_min: Mapped[int | None] = mapped_column(Integer)
    year_max: Mapped[int | None] = mapped_column(Integer)
    mileage_min: Mapped[int | None] = mapped_column(Integer)
    mileage_max: Mapped[int | None] = mapped_column(Integer)
    price_min: Mapped[int | None] = mapped_column(Integer)
    price_max: Mapped[int | None] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active", index=True)
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_buy_box_items_make_model", "make", "model"),
    )


class VehicleMake(Base):
    """Registry make list, cached in storage."""
    __tablename__ = "vehicle_makes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    external_id: Mapped[str | None] = mapped_column(String(50))
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, nullable=False)

    models: Mapped[list[VehicleModel]] = relationship("VehicleModel", back_populates="make")


class VehicleModel(Base):
    """Registry models per make, cached in storage."""
    __tablename__ = "vehicle_models"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    make_id: Mapped[int] = mapped_column(
        ForeignKey("vehicle_makes.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    external_id: Mapped[str | None] = mapped_column(String(50))
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, nullable=False)

    make: Mapped[VehicleMake] = relationship("VehicleMake", back_populates="models")


class Inspection(Base):
    """Pending inspection created for each (vehicle, buy box item) match."""
    __tablename__ = "inspections"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    vehicle_id: Mapped[int] = mapped_column(
        ForeignKey("vehicles.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    buy_box_item_id: Mapped[int] = mapped_column(Integer, nullable=False)
    dealer_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    runlist_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    inspector_id: Mapped[int | None] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)
    scheduled_date: Mapped[date | None] = mapped_column(Date)
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_inspections_vehicle_item", "vehicle_id", "buy_box_item_id", unique=True),
    )

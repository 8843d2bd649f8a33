import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Index,
    Integer,
    JSON,
    Numeric,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from rto_recon.db import Base

ID_TYPE = BigInteger().with_variant(Integer, "sqlite")
JSON_TYPE = JSON().with_variant(JSONB, "postgresql")


class Manifest(Base):
    __tablename__ = "manifest"
    __table_args__ = (
        CheckConstraint("summary_total_scanned >= 0", name="summary_total_scanned_non_negative"),
        CheckConstraint("summary_matched >= 0", name="summary_matched_non_negative"),
        CheckConstraint("summary_unmatched >= 0", name="summary_unmatched_non_negative"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    date: Mapped[datetime.date] = mapped_column(Date, nullable=False, unique=True)
    items: Mapped[list] = mapped_column(JSON_TYPE, nullable=False, default=list)
    upload_meta: Mapped[dict] = mapped_column(JSON_TYPE, nullable=False, default=dict)
    summary_total_scanned: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    summary_matched: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    summary_unmatched: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __mapper_args__ = {"version_id_col": version}


class ScanRecord(Base):
    __tablename__ = "scan_record"
    __table_args__ = (
        # at most one successful match per (date, barcode)
        Index(
            "ix_scan_record_matched_once",
            "date",
            "barcode_key",
            unique=True,
            postgresql_where=text("matched"),
            sqlite_where=text("matched = 1"),
        ),
        Index("ix_scan_record_date_barcode", "date", "barcode_key"),
        Index("ix_scan_record_barcode_key", "barcode_key"),
        CheckConstraint("quantity >= 0", name="scan_quantity_non_negative"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    barcode: Mapped[str] = mapped_column(Text, nullable=False)
    barcode_key: Mapped[str] = mapped_column(Text, nullable=False)
    matched: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    product_name: Mapped[str | None] = mapped_column(Text)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    price: Mapped[float] = mapped_column(Numeric(10, 2, asdecimal=False), nullable=False, default=0)
    message: Mapped[str | None] = mapped_column(Text)
    scanned_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    cross_date: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    original_date: Mapped[datetime.date | None] = mapped_column(Date)

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.crm.models import Base


class Customer(Base):
    __tablename__ = "customers"
    __table_args__ = (
        Index("idx_customers_name", "name"),
        Index("idx_customers_stage", "stage"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    name: Mapped[str] = mapped_column(Text, nullable=False)
    email: Mapped[str | None] = mapped_column(Text, nullable=True)
    phone: Mapped[str | None] = mapped_column(Text, nullable=True)

    # new | engaged | ordered | closed lost (see lifecycle.Stage)
    stage: Mapped[str] = mapped_column(String(32), nullable=False, default="new")
    total_revenue: Mapped[Decimal] = mapped_column(Numeric(precision=12, scale=2), nullable=False, default=Decimal("0"))
    touchpoints: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    notes: Mapped[list["Note"]] = relationship(
        "Note",
        back_populates="customer",
        cascade="all, delete-orphan",
        order_by="Note.timestamp",
        lazy="selectin",
    )
    orders: Mapped[list["Order"]] = relationship(
        "Order",
        back_populates="customer",
        cascade="all, delete-orphan",
        order_by="Order.date",
        lazy="selectin",
    )


class Note(Base):
    __tablename__ = "notes"
    __table_args__ = (
        Index("idx_notes_customer_id", "customer_id", "timestamp"),
        UniqueConstraint("customer_id", "idempotency_key", name="uq_notes_customer_idempotency_key"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    customer_id: Mapped[int] = mapped_column(ForeignKey("customers.id", ondelete="CASCADE"), nullable=False)

    type: Mapped[str] = mapped_column(String(16), nullable=False, default="call")  # call | email
    content: Mapped[str] = mapped_column(Text, nullable=False)
    sales_agent: Mapped[str] = mapped_column(Text, nullable=False, default="")
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    is_pinned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_highlighted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    idempotency_key: Mapped[str | None] = mapped_column(String(128), nullable=True)

    customer: Mapped[Customer] = relationship("Customer", back_populates="notes", lazy="selectin")


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        Index("idx_orders_customer_id", "customer_id", "date"),
        UniqueConstraint("customer_id", "idempotency_key", name="uq_orders_customer_idempotency_key"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    customer_id: Mapped[int] = mapped_column(ForeignKey("customers.id", ondelete="CASCADE"), nullable=False)

    amount: Mapped[Decimal] = mapped_column(Numeric(precision=12, scale=2), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    date: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    idempotency_key: Mapped[str | None] = mapped_column(String(128), nullable=True)

    customer: Mapped[Customer] = relationship("Customer", back_populates="orders", lazy="selectin")

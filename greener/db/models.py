"""SQLAlchemy database models."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class Transaction(Base):
    """A merchant order imported from purchase history."""

    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    external_id: Mapped[str] = mapped_column(String(128), nullable=False)
    merchant: Mapped[str] = mapped_column(String(64), nullable=False)
    order_datetime: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    total_amount: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), default=Decimal("0.00"), nullable=False
    )
    currency: Mapped[str] = mapped_column(String(8), default="USD", nullable=False)
    status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    raw_json: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    products: Mapped[list["Product"]] = relationship(
        "Product", back_populates="transaction"
    )

    __table_args__ = (
        UniqueConstraint("merchant", "external_id", name="uq_transaction_merchant_external"),
    )


class Product(Base):
    """A purchased line item."""

    __tablename__ = "transaction_products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    transaction_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("transactions.id"), nullable=True
    )
    external_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    store: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # Null until classified; the only column that may change after insert
    category: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    auto_categorized: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    total: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    purchased_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    transaction: Mapped[Optional["Transaction"]] = relationship(
        "Transaction", back_populates="products"
    )
    estimates: Mapped[list["EmissionEstimate"]] = relationship(
        "EmissionEstimate", back_populates="product"
    )

    __table_args__ = (CheckConstraint("quantity >= 1", name="check_product_quantity"),)


class EmissionEstimate(Base):
    """Append-only CO2e estimate for a product."""

    __tablename__ = "emissions_estimates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    product_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("transaction_products.id"), nullable=False, index=True
    )
    method: Mapped[str] = mapped_column(String(16), nullable=False)  # heuristic, model, cached
    estimated_co2e_kg: Mapped[float] = mapped_column(Float, nullable=False)
    confidence: Mapped[int] = mapped_column(Integer, nullable=False)
    factor_source: Mapped[str] = mapped_column(String(64), nullable=False)
    factor_id: Mapped[str] = mapped_column(String(128), nullable=False)
    reasoning: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    alternatives: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    product: Mapped["Product"] = relationship("Product", back_populates="estimates")

    __table_args__ = (
        CheckConstraint(
            "estimated_co2e_kg >= 0.1 AND estimated_co2e_kg <= 50",
            name="check_estimate_co2e_range",
        ),
        CheckConstraint(
            "confidence >= 0 AND confidence <= 100",
            name="check_estimate_confidence_range",
        ),
    )


class UserPreferences(Base):
    """Dashboard preferences (monthly target, currency, notifications)."""

    __tablename__ = "user_preferences"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    monthly_carbon_target: Mapped[float] = mapped_column(Float, default=10.0, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), default="USD", nullable=False)
    notifications_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    Float,
    Boolean,
    ForeignKey,
    Index,
    UniqueConstraint,
)


Base = declarative_base()

# card statuses
CARD_AVAILABLE = "available"
CARD_LOCKED = "locked"
CARD_SOLD = "sold"
CARD_STATUSES = (CARD_AVAILABLE, CARD_LOCKED, CARD_SOLD)

# order statuses
ORDER_PENDING = "pending"
ORDER_PAID = "paid"
ORDER_COMPLETED = "completed"
ORDER_REFUND_PENDING = "refund_pending"
ORDER_REFUNDED = "refunded"
ORDER_CANCELLED = "cancelled"
ORDER_STATUSES = (
    ORDER_PENDING, ORDER_PAID, ORDER_COMPLETED, ORDER_REFUND_PENDING,
    ORDER_REFUNDED, ORDER_CANCELLED,
)
TERMINAL_STATUSES = (ORDER_COMPLETED, ORDER_REFUNDED, ORDER_CANCELLED)


# ----------------------------
# ORM models
# ----------------------------
class Category(Base):
    __tablename__ = "categories"
    id = Column(String, primary_key=True)
    slug = Column(String, nullable=False, unique=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    sort_order = Column(Integer, nullable=False, default=0)
    created_at = Column(Float, nullable=False)


class Product(Base):
    __tablename__ = "products"
    id = Column(String, primary_key=True)
    slug = Column(String, nullable=False, unique=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Integer, nullable=False)  # cents
    original_price = Column(Integer, nullable=True)  # cents, for discounts
    category_id = Column(String, ForeignKey("categories.id"), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    is_featured = Column(Boolean, nullable=False, default=False)
    sort_order = Column(Integer, nullable=False, default=0)
    min_quantity = Column(Integer, nullable=False, default=1)
    max_quantity = Column(Integer, nullable=False, default=10)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=True)
    # no stock column: stock is counted from available cards


class Card(Base):
    __tablename__ = "cards"
    # autoincrement id doubles as insertion order for allocation
    id = Column(Integer, primary_key=True, autoincrement=True)
    product_id = Column(String, ForeignKey("products.id"), nullable=False)
    secret = Column(Text, nullable=False)

    # available | locked | sold
    status = Column(String, nullable=False, default=CARD_AVAILABLE)
    order_id = Column(String, ForeignKey("orders.id"), nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=True)

    __table_args__ = (
        Index("cards_product_status_idx", "product_id", "status"),
        Index("cards_order_idx", "order_id"),
    )


class Order(Base):
    __tablename__ = "orders"
    id = Column(String, primary_key=True)
    order_no = Column(String, nullable=False, unique=True)
    product_id = Column(String, ForeignKey("products.id"), nullable=False)
    product_name = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    total_amount = Column(Integer, nullable=False)  # cents
    payment_method = Column(String, nullable=False, default="epay")
    email = Column(String, nullable=False)

    # pending | paid | completed | refund_pending | refunded | cancelled
    status = Column(String, nullable=False, default=ORDER_PENDING)
    refund_reason = Column(Text, nullable=True)
    # status to restore when a refund request is rejected
    refund_prior_status = Column(String, nullable=True)

    # gateway transaction id, set once paid
    trade_no = Column(String, nullable=True)

    created_at = Column(Float, nullable=False)
    paid_at = Column(Float, nullable=True)
    completed_at = Column(Float, nullable=True)
    refunded_at = Column(Float, nullable=True)

    __table_args__ = (
        Index("orders_status_created_idx", "status", "created_at"),
    )


class OrderEvent(Base):
    __tablename__ = "order_events"
    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False,
                      index=True)
    from_status = Column(String, nullable=True)
    to_status = Column(String, nullable=False)
    note = Column(Text, nullable=True)
    created_at = Column(Float, nullable=False)


class RestockRequest(Base):
    __tablename__ = "restock_requests"
    id = Column(Integer, primary_key=True, autoincrement=True)
    product_id = Column(String, ForeignKey("products.id"), nullable=False)
    user_id = Column(String, nullable=False)
    username = Column(String, nullable=False)
    user_image = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)

    __table_args__ = (
        UniqueConstraint("product_id", "user_id",
                         name="restock_product_user_uq"),
    )

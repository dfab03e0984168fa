"""
SQLAlchemy models for channel accounts, canonical orders and sync telemetry.
All model and enum definitions live here for simplicity and to avoid circular imports.
"""
from sqlalchemy import Column, String, Integer, BigInteger, Boolean, DateTime, ForeignKey, Numeric, Enum as SQLEnum, JSON, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from channelsync.database import Base
import enum
import uuid

# Enums
class ChannelProvider(str, enum.Enum):
    ETSY = "ETSY"
    SHOPIFY = "SHOPIFY"
    TIKTOK = "TIKTOK"

class OrderStatus(str, enum.Enum):
    NEW = "NEW"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    CANCELLED = "CANCELLED"

class MapStatus(str, enum.Enum):
    UNMAPPED = "UNMAPPED"
    MAPPED = "MAPPED"

class SyncJobStatus(str, enum.Enum):
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"

class SyncTrigger(str, enum.Enum):
    SCHEDULED = "SCHEDULED"
    WEBHOOK = "WEBHOOK"
    MANUAL = "MANUAL"

# Models
class ChannelAccount(Base):
    __tablename__ = "channel_accounts"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column("tenant_id", String, nullable=False, index=True)
    provider = Column(SQLEnum(ChannelProvider), nullable=False)
    external_shop_id = Column("external_shop_id", String, nullable=False, index=True)
    shop_name = Column("shop_name", String, nullable=True)
    access_token = Column("access_token", String, nullable=True)  # Encrypted
    refresh_token = Column("refresh_token", String, nullable=True)  # Encrypted
    token_expires_at = Column("token_expires_at", BigInteger, nullable=True)  # Unix seconds; NULL = never expires
    scope = Column("scope", String, nullable=True)
    shop_metadata = Column("shop_metadata", JSON, nullable=True)  # Provider routing data, e.g. TikTok shop_cipher
    is_active = Column("is_active", Boolean, default=True, nullable=False)
    needs_reauth = Column("needs_reauth", Boolean, default=False, nullable=False)
    last_sync_at = Column("last_sync_at", DateTime(timezone=True), nullable=True)
    created_at = Column("created_at", DateTime, server_default=func.now())
    updated_at = Column("updated_at", DateTime, server_default=func.now(), onupdate=func.now())

    orders = relationship("Order", back_populates="channel_account")
    sync_jobs = relationship("SyncJob", back_populates="channel_account", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint("tenant_id", "provider", "external_shop_id", name="channel_accounts_tenant_shop_unique"),
    )

class OAuthHandshake(Base):
    __tablename__ = "oauth_handshakes"

    state = Column(String, primary_key=True)
    tenant_id = Column("tenant_id", String, nullable=False)
    provider = Column("provider", String, nullable=False)
    pending_account_ref = Column("pending_account_ref", String, nullable=True)
    code_verifier = Column("code_verifier", String, nullable=True)
    redirect_uri = Column("redirect_uri", String, nullable=False)
    shop_domain = Column("shop_domain", String, nullable=True)
    created_at = Column("created_at", DateTime(timezone=True), nullable=False)
    expires_at = Column("expires_at", DateTime(timezone=True), nullable=False, index=True)

class Order(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column("tenant_id", String, nullable=False, index=True)
    channel_account_id = Column("channel_account_id", String, ForeignKey("channel_accounts.id", ondelete="SET NULL"), nullable=True)
    external_order_id = Column("external_order_id", String, nullable=False)
    source_channel = Column("source_channel", SQLEnum(ChannelProvider), nullable=False)
    status = Column(SQLEnum(OrderStatus), default=OrderStatus.NEW, nullable=False)
    map_status = Column("map_status", SQLEnum(MapStatus), default=MapStatus.UNMAPPED, nullable=False)
    customer_name = Column("customer_name", String, nullable=True)
    customer_email = Column("customer_email", String, nullable=True)
    shipping_address = Column("shipping_address", JSON, nullable=True)
    total_amount = Column("total_amount", Numeric(12, 2), default=0, nullable=False)
    shipping_amount = Column("shipping_amount", Numeric(12, 2), default=0, nullable=False)
    tax_amount = Column("tax_amount", Numeric(12, 2), default=0, nullable=False)
    currency = Column("currency", String(3), nullable=True)
    tracking_number = Column("tracking_number", String, nullable=True)
    tracking_url = Column("tracking_url", String, nullable=True)
    carrier = Column("carrier", String, nullable=True)
    channel_data = Column("channel_data", JSON, nullable=True)
    is_gift = Column("is_gift", Boolean, default=False, nullable=False)
    gift_message = Column("gift_message", String, nullable=True)
    created_at = Column("created_at", DateTime, server_default=func.now())
    updated_at = Column("updated_at", DateTime, server_default=func.now(), onupdate=func.now())

    channel_account = relationship("ChannelAccount", back_populates="orders")
    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")
    history = relationship("OrderStatusHistory", back_populates="order", cascade="all, delete-orphan",
                           order_by="OrderStatusHistory.created_at")

    __table_args__ = (
        UniqueConstraint("tenant_id", "external_order_id", name="orders_tenant_external_order_unique"),
    )

class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    order_id = Column("order_id", String, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    listing_ref = Column("listing_ref", String, nullable=True)
    sku = Column(String, nullable=True)
    title = Column(String, nullable=True)
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column("unit_price", Numeric(12, 2), default=0, nullable=False)
    variation_descriptors = Column("variation_descriptors", JSON, nullable=True)
    design_links = Column("design_links", JSON, nullable=True)
    image_url = Column("image_url", String, nullable=True)

    order = relationship("Order", back_populates="items")

class OrderStatusHistory(Base):
    __tablename__ = "order_status_history"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    order_id = Column("order_id", String, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    from_status = Column("from_status", SQLEnum(OrderStatus), nullable=True)
    to_status = Column("to_status", SQLEnum(OrderStatus), nullable=False)
    note = Column(String, nullable=True)
    created_at = Column("created_at", DateTime, server_default=func.now())

    order = relationship("Order", back_populates="history")

class SyncJob(Base):
    __tablename__ = "sync_jobs"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    channel_account_id = Column("channel_account_id", String, ForeignKey("channel_accounts.id", ondelete="CASCADE"), nullable=False)
    status = Column(SQLEnum(SyncJobStatus), default=SyncJobStatus.QUEUED)
    trigger = Column(SQLEnum(SyncTrigger), default=SyncTrigger.MANUAL)
    started_at = Column("started_at", DateTime(timezone=True), nullable=True)
    finished_at = Column("finished_at", DateTime(timezone=True), nullable=True)
    records_fetched = Column("records_fetched", Integer, default=0)
    records_inserted = Column("records_inserted", Integer, default=0)
    records_skipped = Column("records_skipped", Integer, default=0)
    records_failed = Column("records_failed", Integer, default=0)
    error_message = Column("error_message", String, nullable=True)
    created_at = Column("created_at", DateTime, server_default=func.now())

    channel_account = relationship("ChannelAccount", back_populates="sync_jobs")

class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    source = Column("source", String, nullable=False, index=True)
    shop_domain = Column("shop_domain", String, nullable=True, index=True)
    topic = Column("topic", String, nullable=False, index=True)
    delivery_id = Column("delivery_id", String, nullable=True, unique=True)
    payload_summary = Column("payload_summary", String, nullable=True)
    processed_at = Column("processed_at", DateTime, nullable=True)
    error = Column("error", String, nullable=True)
    created_at = Column("created_at", DateTime, server_default=func.now())

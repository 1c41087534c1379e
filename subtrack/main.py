import logging
import os
import re
from datetime import date, datetime
from decimal import Decimal

import bcrypt
from fastapi import FastAPI, HTTPException, Header, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    UniqueConstraint,
    create_engine,
    delete,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError

from subtrack.billing_frequency import BillingFrequency
from subtrack.currency_conversion import (
    DEFAULT_CACHE_TTL_SECONDS,
    DEFAULT_FETCH_TIMEOUT_SECONDS,
    CurrencyConversionError,
    ExchangeRateFetcher,
    InMemoryRateCache,
    coerce_amount,
    normalize_currency,
)
from subtrack.records import Category, Subscription
from subtrack.renewal_projection import renewal_dates, upcoming_renewals
from subtrack.spend_aggregation import aggregate_monthly, aggregate_yearly
from subtrack.spending_summary import (
    DashboardEntry,
    category_breakdown,
    summarize_active_spend,
    summarize_dashboard,
)

logger = logging.getLogger(__name__)

app = FastAPI()

frontend_origin = os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

database_url = os.getenv("DATABASE_URL", "sqlite:///./subtrack.db")
connect_args = {}
if database_url.startswith("sqlite"):
    connect_args = {"check_same_thread": False}

engine = create_engine(database_url, connect_args=connect_args)
metadata = MetaData()


def get_system_default_currency() -> str:
    raw = os.getenv("DEFAULT_CURRENCY", "USD")
    try:
        return normalize_currency(raw)
    except ValueError:
        return "USD"


def get_float_setting(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r", name, raw)
        return default


SYSTEM_DEFAULT_CURRENCY = get_system_default_currency()
RATE_CACHE = InMemoryRateCache(
    ttl_seconds=get_float_setting("EXCHANGE_RATE_CACHE_TTL_SECONDS", DEFAULT_CACHE_TTL_SECONDS)
)
RATE_FETCHER = ExchangeRateFetcher(
    cache=RATE_CACHE,
    timeout=get_float_setting("EXCHANGE_RATE_TIMEOUT_SECONDS", DEFAULT_FETCH_TIMEOUT_SECONDS),
)

DEFAULT_CATEGORY_COLOR = "#0000FF"
COLOR_PATTERN = re.compile(r"^#[0-9A-Fa-f]{6}$")
LAST_FOUR_PATTERN = re.compile(r"^\d{4}$")
MIN_PASSWORD_LENGTH = 8
MIN_YEAR = date.min.year
MAX_YEAR = date.max.year - 1
ANALYTICS_ERROR = "Failed to fetch analytics data."

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), unique=True, nullable=False),
    Column("name", String(255), nullable=False),
    Column("hashed_password", String(255), nullable=False),
    Column("currency", String(3), nullable=False, server_default=SYSTEM_DEFAULT_CURRENCY),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

categories = Table(
    "categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("color", String(7), nullable=False, server_default=DEFAULT_CATEGORY_COLOR),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint("user_id", "name", name="uq_categories_user_name"),
)

payment_methods = Table(
    "payment_methods",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("type", String(30), nullable=False),
    Column("last_four", String(4)),
    Column("expiry_date", Date),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

subscriptions = Table(
    "subscriptions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("cost", Numeric(12, 2), nullable=False),
    Column("currency", String(3), nullable=False, server_default=SYSTEM_DEFAULT_CURRENCY),
    Column("billing_frequency", String(20), nullable=False),
    Column("start_date", Date, nullable=False),
    Column("end_date", Date),
    Column("notes", String(1000)),
    Column("category_id", Integer, ForeignKey("categories.id")),
    Column("payment_method_id", Integer, ForeignKey("payment_methods.id")),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

notification_providers = Table(
    "notification_providers",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("type", String(10), nullable=False),
    Column("smtp_server", String(255)),
    Column("smtp_port", Integer),
    Column("smtp_user", String(255)),
    Column("smtp_password", String(255)),
    Column("webhook_url", String(1000)),
    Column("webhook_secret", String(255)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

reminders = Table(
    "reminders",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("subscription_id", Integer, ForeignKey("subscriptions.id"), nullable=False),
    Column("reminder_date", Date, nullable=False),
    Column("is_read", Boolean, nullable=False, server_default="0"),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

reminder_providers = Table(
    "reminder_providers",
    metadata,
    Column("reminder_id", Integer, ForeignKey("reminders.id"), primary_key=True),
    Column("provider_id", Integer, ForeignKey("notification_providers.id"), primary_key=True),
)


@app.on_event("startup")
def init_db() -> None:
    metadata.create_all(engine)


class SignupPayload(BaseModel):
    name: str
    email: str
    password: str

    @classmethod
    def validate_payload(cls, payload: "SignupPayload") -> "SignupPayload":
        payload.name = payload.name.strip()
        payload.email = payload.email.strip().lower()
        if not payload.name:
            raise ValueError("Name is required.")
        if "@" not in payload.email:
            raise ValueError("Invalid email address.")
        if len(payload.password) < MIN_PASSWORD_LENGTH:
            raise ValueError("Password must be at least 8 characters.")
        return payload


class CredentialsPayload(BaseModel):
    email: str
    password: str


class UserResponse(BaseModel):
    id: int
    email: str
    name: str
    currency: str
    created_at: datetime | None = None


class ProfilePayload(BaseModel):
    name: str | None = None
    currency: str | None = None

    @classmethod
    def validate_payload(cls, payload: "ProfilePayload") -> "ProfilePayload":
        if payload.name is not None:
            payload.name = payload.name.strip()
            if not payload.name:
                raise ValueError("Name is required.")
        if payload.currency is not None:
            payload.currency = normalize_currency(payload.currency)
        return payload


class CurrencyPayload(BaseModel):
    currency: str


class CurrencyResponse(BaseModel):
    currency: str


class PasswordPayload(BaseModel):
    current_password: str
    new_password: str
    repeat_password: str

    @classmethod
    def validate_payload(cls, payload: "PasswordPayload") -> "PasswordPayload":
        if not payload.current_password or not payload.new_password or not payload.repeat_password:
            raise ValueError("All fields are required.")
        if len(payload.new_password) < MIN_PASSWORD_LENGTH:
            raise ValueError("Password must be at least 8 characters.")
        if payload.new_password != payload.repeat_password:
            raise ValueError("New passwords don't match.")
        return payload


class MessageResponse(BaseModel):
    message: str


def _validate_color(value: str) -> str:
    normalized = value.strip()
    if not COLOR_PATTERN.match(normalized):
        raise ValueError("Invalid color format.")
    return normalized.upper()


class CategoryPayload(BaseModel):
    name: str
    color: str | None = None

    @classmethod
    def validate_payload(cls, payload: "CategoryPayload") -> "CategoryPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Category name required.")
        payload.color = _validate_color(payload.color) if payload.color else DEFAULT_CATEGORY_COLOR
        return payload


class CategoryUpdatePayload(BaseModel):
    name: str | None = None
    color: str | None = None

    @classmethod
    def validate_payload(cls, payload: "CategoryUpdatePayload") -> "CategoryUpdatePayload":
        if payload.name is not None:
            payload.name = payload.name.strip()
            if not payload.name:
                raise ValueError("Category name required.")
        if payload.color is not None:
            payload.color = _validate_color(payload.color)
        return payload


class CategoryResponse(BaseModel):
    id: int
    user_id: int
    name: str
    color: str
    created_at: datetime | None = None


class PaymentMethodType:
    values = {
        "CREDIT_CARD",
        "DEBIT_CARD",
        "PAYPAL",
        "APPLE_PAY",
        "GOOGLE_PAY",
        "CRYPTO",
        "BANK_TRANSFER",
        "OTHER",
    }

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in cls.values:
            raise ValueError("Invalid payment method type.")
        return normalized


def _validate_last_four(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip()
    if not LAST_FOUR_PATTERN.match(normalized):
        raise ValueError("Last four must be exactly 4 digits.")
    return normalized


class PaymentMethodPayload(BaseModel):
    name: str
    type: str
    last_four: str | None = None
    expiry_date: date | None = None

    @classmethod
    def validate_payload(cls, payload: "PaymentMethodPayload") -> "PaymentMethodPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Payment method name required.")
        payload.type = PaymentMethodType.validate(payload.type)
        payload.last_four = _validate_last_four(payload.last_four)
        return payload


class PaymentMethodUpdatePayload(BaseModel):
    name: str | None = None
    type: str | None = None
    last_four: str | None = None
    expiry_date: date | None = None

    @classmethod
    def validate_payload(
        cls, payload: "PaymentMethodUpdatePayload"
    ) -> "PaymentMethodUpdatePayload":
        if payload.name is not None:
            payload.name = payload.name.strip()
            if not payload.name:
                raise ValueError("Payment method name required.")
        if payload.type is not None:
            payload.type = PaymentMethodType.validate(payload.type)
        if payload.last_four is not None:
            payload.last_four = _validate_last_four(payload.last_four)
        return payload


class PaymentMethodResponse(BaseModel):
    id: int
    user_id: int
    name: str
    type: str
    last_four: str | None = None
    expiry_date: date | None = None
    created_at: datetime | None = None


def _validate_frequency(value: str) -> str:
    normalized = value.strip().lower()
    allowed = {frequency.value for frequency in BillingFrequency}
    if normalized not in allowed:
        raise ValueError("Invalid billing frequency.")
    return normalized


class SubscriptionPayload(BaseModel):
    name: str
    cost: Decimal
    currency: str
    billing_frequency: str
    start_date: date
    end_date: date | None = None
    notes: str | None = None
    category: str | None = None
    payment_method: str | None = None

    @classmethod
    def validate_payload(cls, payload: "SubscriptionPayload") -> "SubscriptionPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Name is required.")
        if payload.cost <= 0:
            raise ValueError("Cost must be positive.")
        payload.currency = normalize_currency(payload.currency)
        payload.billing_frequency = _validate_frequency(payload.billing_frequency)
        if payload.end_date is not None and payload.end_date < payload.start_date:
            raise ValueError("End date must be on or after start date.")
        payload.notes = payload.notes.strip() if payload.notes else None
        payload.category = payload.category.strip() if payload.category else None
        payload.payment_method = payload.payment_method.strip() if payload.payment_method else None
        return payload


class SubscriptionUpdatePayload(BaseModel):
    name: str | None = None
    cost: Decimal | None = None
    currency: str | None = None
    billing_frequency: str | None = None
    start_date: date | None = None
    end_date: date | None = None
    notes: str | None = None
    category: str | None = None
    payment_method: str | None = None

    @classmethod
    def validate_payload(
        cls, payload: "SubscriptionUpdatePayload"
    ) -> "SubscriptionUpdatePayload":
        if payload.name is not None:
            payload.name = payload.name.strip()
            if not payload.name:
                raise ValueError("Name is required.")
        if payload.cost is not None and payload.cost <= 0:
            raise ValueError("Cost must be positive.")
        if payload.currency is not None:
            payload.currency = normalize_currency(payload.currency)
        if payload.billing_frequency is not None:
            payload.billing_frequency = _validate_frequency(payload.billing_frequency)
        if payload.category is not None:
            payload.category = payload.category.strip() or None
        if payload.payment_method is not None:
            payload.payment_method = payload.payment_method.strip() or None
        return payload


class CategorySummary(BaseModel):
    id: int
    name: str
    color: str


class ReminderSummary(BaseModel):
    id: int
    reminder_date: date
    providers: list[str]


class SubscriptionResponse(BaseModel):
    id: int
    user_id: int
    name: str
    cost: Decimal
    currency: str
    billing_frequency: str
    start_date: date
    end_date: date | None = None
    notes: str | None = None
    category: CategorySummary | None = None
    payment_method: str | None = None
    created_at: datetime | None = None


class SubscriptionDetailResponse(SubscriptionResponse):
    reminders: list[ReminderSummary] = []


class ReminderPayload(BaseModel):
    subscription_id: int
    reminder_date: date
    notification_provider_ids: list[int]

    @classmethod
    def validate_payload(cls, payload: "ReminderPayload") -> "ReminderPayload":
        if not payload.notification_provider_ids:
            raise ValueError("At least one notification provider is required.")
        payload.notification_provider_ids = sorted(set(payload.notification_provider_ids))
        return payload


class ReminderUpdatePayload(BaseModel):
    reminder_date: date | None = None
    is_read: bool | None = None
    notification_provider_ids: list[int] | None = None

    @classmethod
    def validate_payload(cls, payload: "ReminderUpdatePayload") -> "ReminderUpdatePayload":
        if payload.notification_provider_ids is not None:
            if not payload.notification_provider_ids:
                raise ValueError("At least one notification provider is required.")
            payload.notification_provider_ids = sorted(set(payload.notification_provider_ids))
        return payload


class ReminderResponse(BaseModel):
    id: int
    user_id: int
    subscription_id: int
    subscription_name: str
    reminder_date: date
    is_read: bool
    notification_provider_ids: list[int]
    created_at: datetime | None = None


class NotificationProviderType:
    values = {"EMAIL", "PUSH"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in cls.values:
            raise ValueError("Invalid notification provider type.")
        return normalized


class NotificationProviderPayload(BaseModel):
    name: str
    type: str
    smtp_server: str | None = None
    smtp_port: int | None = None
    smtp_user: str | None = None
    smtp_password: str | None = None
    webhook_url: str | None = None
    webhook_secret: str | None = None

    @classmethod
    def validate_payload(
        cls, payload: "NotificationProviderPayload"
    ) -> "NotificationProviderPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Name is required.")
        payload.type = NotificationProviderType.validate(payload.type)
        has_smtp = any(
            (payload.smtp_server, payload.smtp_port, payload.smtp_user, payload.smtp_password)
        )
        has_webhook = any((payload.webhook_url, payload.webhook_secret))
        if has_smtp and has_webhook:
            raise ValueError("Provide either SMTP or Webhook configuration, not both.")
        if payload.webhook_url:
            payload.webhook_url = payload.webhook_url.strip()
            if not payload.webhook_url.startswith(("http://", "https://")):
                raise ValueError("Webhook URL must be an http(s) URL.")
        return payload


class NotificationProviderResponse(BaseModel):
    id: int
    user_id: int
    name: str
    type: str
    smtp_server: str | None = None
    smtp_port: int | None = None
    smtp_user: str | None = None
    webhook_url: str | None = None
    created_at: datetime | None = None


class CategoryMetaResponse(BaseModel):
    id: str
    name: str
    color: str


class MonthlyAnalyticsResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    years: list[int]
    monthly_data: list[dict[str, str | int]] = Field(alias="monthlyData")
    categories: list[CategoryMetaResponse]


class YearlyAnalyticsResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    yearly_data: list[dict[str, int]] = Field(alias="yearlyData")
    categories: list[CategoryMetaResponse]
    currency: str


class SubscriptionDatesEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: int
    name: str
    billing_frequency: str = Field(alias="billingFrequency")
    cost: Decimal
    currency: str
    category: str | None = None
    category_color: str | None = None
    sub_dates: list[str]


class SubscriptionDatesResponse(BaseModel):
    overview: list[SubscriptionDatesEntry]


class DashboardTotalsResponse(BaseModel):
    total_monthly: Decimal
    total_yearly: Decimal
    currency: str
    active_subscriptions: int
    upcoming_renewals: int


class DashboardEntryResponse(BaseModel):
    id: int
    name: str
    cost: Decimal
    currency: str
    original_cost: Decimal
    original_currency: str
    billing_frequency: str
    start_date: date
    next_renewal: date | None = None
    category: str | None = None
    category_color: str | None = None
    conversion_failed: bool


class DashboardWarningsResponse(BaseModel):
    conversion_errors: list[str]
    message: str


class DashboardResponse(BaseModel):
    totals: DashboardTotalsResponse
    recent_subscriptions: list[DashboardEntryResponse]
    upcoming_renewals: list[DashboardEntryResponse]
    warnings: DashboardWarningsResponse | None = None


class UpcomingRenewalResponse(BaseModel):
    id: int
    name: str
    cost: Decimal
    currency: str
    billing_frequency: str
    next_renewal: date
    category: str | None = None
    category_color: str | None = None


class CategoryShareResponse(BaseModel):
    name: str
    color: str
    amount: Decimal
    percentage: Decimal


class CategorySpendingResponse(BaseModel):
    breakdown: list[CategoryShareResponse]
    total_yearly_spend: Decimal


class AnalyticsSummaryResponse(BaseModel):
    monthly_total: Decimal
    yearly_total: Decimal
    currency: str
    active_subscriptions_count: int
    upcoming_renewals_count: int
    upcoming_renewals: list[UpcomingRenewalResponse]
    category_spending: CategorySpendingResponse


class MoneyValue(BaseModel):
    value: Decimal
    currency: str


class LargestExpenseResponse(BaseModel):
    id: int
    name: str
    cost: Decimal
    currency: str
    billing_frequency: str
    normalized_monthly_cost: Decimal
    category: CategoryMetaResponse | None = None


class AnalyticsDetailsResponse(BaseModel):
    average_monthly: MoneyValue
    average_yearly: MoneyValue
    largest_expense: LargestExpenseResponse | None = None


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))


def get_user_id(x_user_id: str | None = Header(None)) -> int:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user identity.")
    try:
        user_id = int(x_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid user identity.") from exc
    with engine.begin() as conn:
        result = conn.execute(select(users.c.id).where(users.c.id == user_id))
        if not result.first():
            raise HTTPException(status_code=404, detail="User not found.")
    return user_id


def resolve_user_currency(conn, user_id: int) -> str:
    currency = conn.execute(
        select(users.c.currency).where(users.c.id == user_id)
    ).scalar_one_or_none()
    if currency:
        try:
            return normalize_currency(currency)
        except ValueError:
            pass
    return SYSTEM_DEFAULT_CURRENCY


def user_response(row) -> UserResponse:
    return UserResponse(
        id=row["id"],
        email=row["email"],
        name=row["name"],
        currency=row["currency"],
        created_at=row["created_at"],
    )


def category_response(row) -> CategoryResponse:
    return CategoryResponse(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        color=row["color"],
        created_at=row["created_at"],
    )


def payment_method_response(row) -> PaymentMethodResponse:
    return PaymentMethodResponse(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        type=row["type"],
        last_four=row["last_four"],
        expiry_date=row["expiry_date"],
        created_at=row["created_at"],
    )


def notification_provider_response(row) -> NotificationProviderResponse:
    return NotificationProviderResponse(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        type=row["type"],
        smtp_server=row["smtp_server"],
        smtp_port=row["smtp_port"],
        smtp_user=row["smtp_user"],
        webhook_url=row["webhook_url"],
        created_at=row["created_at"],
    )


def subscription_select(user_id: int):
    return (
        select(
            subscriptions,
            categories.c.name.label("category_name"),
            categories.c.color.label("category_color"),
            payment_methods.c.name.label("payment_method_name"),
        )
        .select_from(
            subscriptions.outerjoin(
                categories, subscriptions.c.category_id == categories.c.id
            ).outerjoin(
                payment_methods, subscriptions.c.payment_method_id == payment_methods.c.id
            )
        )
        .where(subscriptions.c.user_id == user_id)
    )


def subscription_response(row) -> SubscriptionResponse:
    category = None
    if row["category_id"] is not None and row["category_name"] is not None:
        category = CategorySummary(
            id=row["category_id"],
            name=row["category_name"],
            color=row["category_color"],
        )
    return SubscriptionResponse(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        cost=row["cost"],
        currency=row["currency"],
        billing_frequency=row["billing_frequency"],
        start_date=row["start_date"],
        end_date=row["end_date"],
        notes=row["notes"],
        category=category,
        payment_method=row["payment_method_name"],
        created_at=row["created_at"],
    )


def subscription_record(row) -> Subscription:
    category = None
    if row["category_id"] is not None and row["category_name"] is not None:
        category = Category(
            id=row["category_id"],
            name=row["category_name"],
            color=row["category_color"],
        )
    return Subscription(
        id=row["id"],
        name=row["name"],
        cost=coerce_amount(row["cost"]),
        currency=row["currency"],
        billing_frequency=row["billing_frequency"],
        start_date=row["start_date"],
        end_date=row["end_date"],
        category=category,
    )


def load_subscription_records(conn, user_id: int) -> list[Subscription]:
    rows = conn.execute(
        subscription_select(user_id).order_by(
            subscriptions.c.start_date.asc(), subscriptions.c.id.asc()
        )
    ).mappings().all()
    return [subscription_record(row) for row in rows]


def fetch_subscription_row(conn, user_id: int, subscription_id: int):
    return conn.execute(
        subscription_select(user_id).where(subscriptions.c.id == subscription_id)
    ).mappings().first()


def find_or_create_category(conn, user_id: int, name: str | None) -> int | None:
    if not name:
        return None
    existing = conn.execute(
        select(categories.c.id).where(categories.c.user_id == user_id, categories.c.name == name)
    ).scalar_one_or_none()
    if existing is not None:
        return existing
    return conn.execute(
        insert(categories)
        .values(user_id=user_id, name=name, color=DEFAULT_CATEGORY_COLOR)
        .returning(categories.c.id)
    ).scalar_one()


def find_or_create_payment_method(conn, user_id: int, name: str | None) -> int | None:
    if not name:
        return None
    existing = conn.execute(
        select(payment_methods.c.id)
        .where(payment_methods.c.user_id == user_id, payment_methods.c.name == name)
        .limit(1)
    ).scalar_one_or_none()
    if existing is not None:
        return existing
    return conn.execute(
        insert(payment_methods)
        .values(user_id=user_id, name=name, type="OTHER")
        .returning(payment_methods.c.id)
    ).scalar_one()


def ensure_providers_owned(conn, user_id: int, provider_ids: list[int]) -> None:
    owned = conn.execute(
        select(notification_providers.c.id).where(
            notification_providers.c.user_id == user_id,
            notification_providers.c.id.in_(provider_ids),
        )
    ).scalars().all()
    if len(set(owned)) != len(set(provider_ids)):
        raise HTTPException(status_code=404, detail="Notification provider not found.")


def replace_reminder_providers(conn, reminder_id: int, provider_ids: list[int]) -> None:
    conn.execute(delete(reminder_providers).where(reminder_providers.c.reminder_id == reminder_id))
    conn.execute(
        insert(reminder_providers),
        [{"reminder_id": reminder_id, "provider_id": provider_id} for provider_id in provider_ids],
    )


def reminder_response(conn, row) -> ReminderResponse:
    provider_ids = conn.execute(
        select(reminder_providers.c.provider_id)
        .where(reminder_providers.c.reminder_id == row["id"])
        .order_by(reminder_providers.c.provider_id.asc())
    ).scalars().all()
    return ReminderResponse(
        id=row["id"],
        user_id=row["user_id"],
        subscription_id=row["subscription_id"],
        subscription_name=row["subscription_name"],
        reminder_date=row["reminder_date"],
        is_read=bool(row["is_read"]),
        notification_provider_ids=list(provider_ids),
        created_at=row["created_at"],
    )


def reminder_select(user_id: int):
    return (
        select(reminders, subscriptions.c.name.label("subscription_name"))
        .select_from(
            reminders.join(subscriptions, reminders.c.subscription_id == subscriptions.c.id)
        )
        .where(reminders.c.user_id == user_id)
    )


def delete_reminders_where(conn, condition) -> None:
    reminder_ids = conn.execute(select(reminders.c.id).where(condition)).scalars().all()
    if reminder_ids:
        conn.execute(
            delete(reminder_providers).where(reminder_providers.c.reminder_id.in_(reminder_ids))
        )
        conn.execute(delete(reminders).where(reminders.c.id.in_(reminder_ids)))


def category_meta_response(category: Category) -> CategoryMetaResponse:
    return CategoryMetaResponse(id=str(category.id), name=category.name, color=category.color)


def dashboard_entry_response(entry: DashboardEntry) -> DashboardEntryResponse:
    return DashboardEntryResponse(
        id=entry.id,
        name=entry.name,
        cost=entry.cost,
        currency=entry.currency,
        original_cost=entry.original_cost,
        original_currency=entry.original_currency,
        billing_frequency=entry.billing_frequency,
        start_date=entry.start_date,
        next_renewal=entry.next_renewal,
        category=entry.category.name if entry.category else None,
        category_color=entry.category.color if entry.category else None,
        conversion_failed=entry.conversion_failed,
    )


def parse_year_value(value: str | None, default: int) -> int:
    if value is None or not value.strip():
        return default
    try:
        year = int(value)
    except ValueError as exc:
        raise ValueError("Invalid year parameter.") from exc
    return validate_year(year)


def validate_year(year: int) -> int:
    # Renewal stepping looks a few days past the queried year.
    if not MIN_YEAR <= year <= MAX_YEAR:
        raise ValueError("Invalid year parameter.")
    return year


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.post("/auth/signup", response_model=UserResponse)
def signup(payload: SignupPayload) -> UserResponse:
    try:
        payload = SignupPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    hashed_password = hash_password(payload.password)

    stmt = (
        insert(users)
        .values(
            email=payload.email,
            name=payload.name,
            hashed_password=hashed_password,
            currency=SYSTEM_DEFAULT_CURRENCY,
        )
        .returning(users.c.id, users.c.email, users.c.name, users.c.currency, users.c.created_at)
    )
    try:
        with engine.begin() as conn:
            row = conn.execute(stmt).mappings().first()
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Email already exists.") from exc

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create user.")
    return user_response(row)


@app.post("/auth/login", response_model=UserResponse)
def login(payload: CredentialsPayload) -> UserResponse:
    email = payload.email.strip().lower()
    with engine.begin() as conn:
        row = conn.execute(select(users).where(users.c.email == email)).mappings().first()

    if not row or not verify_password(payload.password, row["hashed_password"]):
        raise HTTPException(status_code=401, detail="Invalid credentials.")
    return user_response(row)


@app.get("/users/me", response_model=UserResponse)
def get_profile(x_user_id: str | None = Header(None, alias="x-user-id")) -> UserResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        row = conn.execute(select(users).where(users.c.id == user_id)).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="User not found.")
    return user_response(row)


@app.put("/users/me", response_model=UserResponse)
def update_profile(
    payload: ProfilePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> UserResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = ProfilePayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    values = {}
    if payload.name is not None:
        values["name"] = payload.name
    if payload.currency is not None:
        values["currency"] = payload.currency
    with engine.begin() as conn:
        if values:
            conn.execute(update(users).where(users.c.id == user_id).values(**values))
        row = conn.execute(select(users).where(users.c.id == user_id)).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="User not found.")
    return user_response(row)


@app.delete("/users/me", response_model=MessageResponse)
def delete_account(x_user_id: str | None = Header(None, alias="x-user-id")) -> MessageResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        delete_reminders_where(conn, reminders.c.user_id == user_id)
        conn.execute(delete(subscriptions).where(subscriptions.c.user_id == user_id))
        conn.execute(
            delete(notification_providers).where(notification_providers.c.user_id == user_id)
        )
        conn.execute(delete(payment_methods).where(payment_methods.c.user_id == user_id))
        conn.execute(delete(categories).where(categories.c.user_id == user_id))
        conn.execute(delete(users).where(users.c.id == user_id))
    return MessageResponse(message="User account deleted successfully.")


@app.get("/users/me/currency", response_model=CurrencyResponse)
def get_currency(x_user_id: str | None = Header(None, alias="x-user-id")) -> CurrencyResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        currency = resolve_user_currency(conn, user_id)
    return CurrencyResponse(currency=currency)


@app.put("/users/me/currency", response_model=CurrencyResponse)
def update_currency(
    payload: CurrencyPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> CurrencyResponse:
    user_id = get_user_id(x_user_id)
    try:
        currency = normalize_currency(payload.currency)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    with engine.begin() as conn:
        conn.execute(update(users).where(users.c.id == user_id).values(currency=currency))
    return CurrencyResponse(currency=currency)


@app.put("/users/me/password", response_model=MessageResponse)
def update_password(
    payload: PasswordPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> MessageResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = PasswordPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        hashed_password = conn.execute(
            select(users.c.hashed_password).where(users.c.id == user_id)
        ).scalar_one_or_none()
        if hashed_password is None:
            raise HTTPException(status_code=404, detail="User not found.")
        if not verify_password(payload.current_password, hashed_password):
            raise HTTPException(status_code=400, detail="Current password is incorrect.")
        conn.execute(
            update(users)
            .where(users.c.id == user_id)
            .values(hashed_password=hash_password(payload.new_password))
        )
    return MessageResponse(message="Password changed successfully.")


@app.get("/categories", response_model=list[CategoryResponse])
def list_categories(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[CategoryResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        rows = conn.execute(
            select(categories)
            .where(categories.c.user_id == user_id)
            .order_by(categories.c.created_at.asc(), categories.c.id.asc())
        ).mappings().all()
    return [category_response(row) for row in rows]


@app.post("/categories", response_model=CategoryResponse)
def create_category(
    payload: CategoryPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> CategoryResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = CategoryPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    stmt = (
        insert(categories)
        .values(user_id=user_id, name=payload.name, color=payload.color)
        .returning(
            categories.c.id,
            categories.c.user_id,
            categories.c.name,
            categories.c.color,
            categories.c.created_at,
        )
    )
    try:
        with engine.begin() as conn:
            row = conn.execute(stmt).mappings().first()
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Category already exists.") from exc

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create category.")
    return category_response(row)


@app.get("/categories/{category_id}", response_model=CategoryResponse)
def get_category(
    category_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> CategoryResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        row = conn.execute(
            select(categories).where(categories.c.id == category_id, categories.c.user_id == user_id)
        ).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="Category not found.")
    return category_response(row)


@app.put("/categories/{category_id}", response_model=CategoryResponse)
def update_category(
    category_id: int,
    payload: CategoryUpdatePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> CategoryResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = CategoryUpdatePayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    values = {}
    if payload.name is not None:
        values["name"] = payload.name
    if payload.color is not None:
        values["color"] = payload.color
    try:
        with engine.begin() as conn:
            if values:
                conn.execute(
                    update(categories)
                    .where(categories.c.id == category_id, categories.c.user_id == user_id)
                    .values(**values)
                )
            row = conn.execute(
                select(categories).where(
                    categories.c.id == category_id, categories.c.user_id == user_id
                )
            ).mappings().first()
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Category already exists.") from exc

    if not row:
        raise HTTPException(status_code=404, detail="Category not found.")
    return category_response(row)


@app.delete("/categories/{category_id}", response_model=MessageResponse)
def delete_category(
    category_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> MessageResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        existing = conn.execute(
            select(categories.c.id).where(
                categories.c.id == category_id, categories.c.user_id == user_id
            )
        ).first()
        if not existing:
            raise HTTPException(status_code=404, detail="Category not found.")
        conn.execute(
            update(subscriptions)
            .where(subscriptions.c.category_id == category_id)
            .values(category_id=None)
        )
        conn.execute(delete(categories).where(categories.c.id == category_id))
    return MessageResponse(message="Category deleted successfully.")


@app.get("/payment-methods", response_model=list[PaymentMethodResponse])
def list_payment_methods(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[PaymentMethodResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        rows = conn.execute(
            select(payment_methods)
            .where(payment_methods.c.user_id == user_id)
            .order_by(payment_methods.c.created_at.asc(), payment_methods.c.id.asc())
        ).mappings().all()
    return [payment_method_response(row) for row in rows]


@app.post("/payment-methods", response_model=PaymentMethodResponse)
def create_payment_method(
    payload: PaymentMethodPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> PaymentMethodResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = PaymentMethodPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        row = conn.execute(
            insert(payment_methods)
            .values(
                user_id=user_id,
                name=payload.name,
                type=payload.type,
                last_four=payload.last_four,
                expiry_date=payload.expiry_date,
            )
            .returning(
                payment_methods.c.id,
                payment_methods.c.user_id,
                payment_methods.c.name,
                payment_methods.c.type,
                payment_methods.c.last_four,
                payment_methods.c.expiry_date,
                payment_methods.c.created_at,
            )
        ).mappings().first()

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create payment method.")
    return payment_method_response(row)


@app.get("/payment-methods/{payment_method_id}", response_model=PaymentMethodResponse)
def get_payment_method(
    payment_method_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> PaymentMethodResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        row = conn.execute(
            select(payment_methods).where(
                payment_methods.c.id == payment_method_id,
                payment_methods.c.user_id == user_id,
            )
        ).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="Payment method not found.")
    return payment_method_response(row)


@app.patch("/payment-methods/{payment_method_id}", response_model=PaymentMethodResponse)
def update_payment_method(
    payment_method_id: int,
    payload: PaymentMethodUpdatePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> PaymentMethodResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = PaymentMethodUpdatePayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    provided = payload.model_fields_set
    values = {}
    if "name" in provided and payload.name is not None:
        values["name"] = payload.name
    if "type" in provided and payload.type is not None:
        values["type"] = payload.type
    if "last_four" in provided:
        values["last_four"] = payload.last_four
    if "expiry_date" in provided:
        values["expiry_date"] = payload.expiry_date

    with engine.begin() as conn:
        existing = conn.execute(
            select(payment_methods.c.id).where(
                payment_methods.c.id == payment_method_id,
                payment_methods.c.user_id == user_id,
            )
        ).first()
        if not existing:
            raise HTTPException(status_code=404, detail="Payment method not found.")
        if values:
            conn.execute(
                update(payment_methods)
                .where(payment_methods.c.id == payment_method_id)
                .values(**values)
            )
        row = conn.execute(
            select(payment_methods).where(payment_methods.c.id == payment_method_id)
        ).mappings().first()
    return payment_method_response(row)


@app.delete("/payment-methods/{payment_method_id}", response_model=MessageResponse)
def delete_payment_method(
    payment_method_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> MessageResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        existing = conn.execute(
            select(payment_methods.c.id).where(
                payment_methods.c.id == payment_method_id,
                payment_methods.c.user_id == user_id,
            )
        ).first()
        if not existing:
            raise HTTPException(status_code=404, detail="Payment method not found.")
        conn.execute(
            update(subscriptions)
            .where(subscriptions.c.payment_method_id == payment_method_id)
            .values(payment_method_id=None)
        )
        conn.execute(delete(payment_methods).where(payment_methods.c.id == payment_method_id))
    return MessageResponse(message="Payment method deleted successfully.")


@app.get("/subscriptions", response_model=list[SubscriptionResponse])
def list_subscriptions(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[SubscriptionResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        rows = conn.execute(
            subscription_select(user_id).order_by(
                subscriptions.c.start_date.asc(), subscriptions.c.id.asc()
            )
        ).mappings().all()
    return [subscription_response(row) for row in rows]


@app.post("/subscriptions", response_model=SubscriptionResponse)
def create_subscription(
    payload: SubscriptionPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> SubscriptionResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = SubscriptionPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        category_id = find_or_create_category(conn, user_id, payload.category)
        payment_method_id = find_or_create_payment_method(conn, user_id, payload.payment_method)
        subscription_id = conn.execute(
            insert(subscriptions)
            .values(
                user_id=user_id,
                name=payload.name,
                cost=payload.cost,
                currency=payload.currency,
                billing_frequency=payload.billing_frequency,
                start_date=payload.start_date,
                end_date=payload.end_date,
                notes=payload.notes,
                category_id=category_id,
                payment_method_id=payment_method_id,
            )
            .returning(subscriptions.c.id)
        ).scalar_one_or_none()
        row = (
            fetch_subscription_row(conn, user_id, subscription_id)
            if subscription_id is not None
            else None
        )

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create subscription.")
    return subscription_response(row)


@app.get("/subscriptions/dates", response_model=SubscriptionDatesResponse)
def subscription_dates(
    year: int | None = Query(None),
    month: int | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> SubscriptionDatesResponse:
    user_id = get_user_id(x_user_id)
    if year is None:
        raise HTTPException(status_code=400, detail="Missing year.")
    try:
        year = validate_year(year)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if month is not None and not 1 <= month <= 12:
        raise HTTPException(status_code=400, detail="Month must be between 1 and 12.")

    with engine.begin() as conn:
        records = load_subscription_records(conn, user_id)

    overview = [
        SubscriptionDatesEntry(
            id=record.id,
            name=record.name,
            billing_frequency=record.billing_frequency,
            cost=record.cost,
            currency=record.currency,
            category=record.category.name if record.category else None,
            category_color=record.category.color if record.category else None,
            sub_dates=renewal_dates(record, year, month),
        )
        for record in records
    ]
    return SubscriptionDatesResponse(overview=overview)


@app.get("/subscriptions/details", response_model=DashboardResponse, response_model_exclude_none=True)
def subscription_details(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> DashboardResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        currency = resolve_user_currency(conn, user_id)
        records = load_subscription_records(conn, user_id)

    summary = summarize_dashboard(records, currency, RATE_FETCHER)
    warnings = None
    if summary.conversion_errors:
        warnings = DashboardWarningsResponse(
            conversion_errors=summary.conversion_errors,
            message=summary.warning,
        )
    return DashboardResponse(
        totals=DashboardTotalsResponse(
            total_monthly=summary.totals.total_monthly,
            total_yearly=summary.totals.total_yearly,
            currency=summary.totals.currency,
            active_subscriptions=summary.totals.active_subscriptions,
            upcoming_renewals=summary.totals.upcoming_renewals,
        ),
        recent_subscriptions=[dashboard_entry_response(entry) for entry in summary.recent_subscriptions],
        upcoming_renewals=[dashboard_entry_response(entry) for entry in summary.upcoming_renewals],
        warnings=warnings,
    )


@app.get("/subscriptions/{subscription_id}", response_model=SubscriptionDetailResponse)
def get_subscription(
    subscription_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> SubscriptionDetailResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        row = fetch_subscription_row(conn, user_id, subscription_id)
        if not row:
            raise HTTPException(status_code=404, detail="Subscription not found.")
        reminder_rows = conn.execute(
            select(reminders.c.id, reminders.c.reminder_date)
            .where(reminders.c.subscription_id == subscription_id)
            .order_by(reminders.c.reminder_date.asc())
        ).mappings().all()
        provider_rows = conn.execute(
            select(reminder_providers.c.reminder_id, notification_providers.c.name)
            .select_from(
                reminder_providers.join(
                    notification_providers,
                    reminder_providers.c.provider_id == notification_providers.c.id,
                )
            )
            .where(reminder_providers.c.reminder_id.in_([item["id"] for item in reminder_rows]))
        ).mappings().all()

    providers_by_reminder: dict[int, list[str]] = {}
    for provider_row in provider_rows:
        providers_by_reminder.setdefault(provider_row["reminder_id"], []).append(provider_row["name"])
    base = subscription_response(row)
    return SubscriptionDetailResponse(
        **base.model_dump(),
        reminders=[
            ReminderSummary(
                id=item["id"],
                reminder_date=item["reminder_date"],
                providers=sorted(providers_by_reminder.get(item["id"], [])),
            )
            for item in reminder_rows
        ],
    )


@app.put("/subscriptions/{subscription_id}", response_model=SubscriptionResponse)
def update_subscription(
    subscription_id: int,
    payload: SubscriptionUpdatePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> SubscriptionResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = SubscriptionUpdatePayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    provided = payload.model_fields_set
    with engine.begin() as conn:
        existing = conn.execute(
            select(subscriptions).where(
                subscriptions.c.id == subscription_id, subscriptions.c.user_id == user_id
            )
        ).mappings().first()
        if not existing:
            raise HTTPException(status_code=404, detail="Subscription not found.")

        values = {}
        for field_name in ("name", "cost", "currency", "billing_frequency", "start_date", "notes"):
            value = getattr(payload, field_name)
            if field_name in provided and value is not None:
                values[field_name] = value
        if "end_date" in provided:
            values["end_date"] = payload.end_date
        if "category" in provided:
            values["category_id"] = find_or_create_category(conn, user_id, payload.category)
        if "payment_method" in provided:
            values["payment_method_id"] = find_or_create_payment_method(
                conn, user_id, payload.payment_method
            )

        start_date = values.get("start_date", existing["start_date"])
        end_date = values.get("end_date", existing["end_date"])
        if end_date is not None and end_date < start_date:
            raise HTTPException(status_code=400, detail="End date must be on or after start date.")

        if values:
            conn.execute(
                update(subscriptions)
                .where(subscriptions.c.id == subscription_id)
                .values(**values)
            )
        row = fetch_subscription_row(conn, user_id, subscription_id)
    return subscription_response(row)


@app.delete("/subscriptions/{subscription_id}", response_model=MessageResponse)
def delete_subscription(
    subscription_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> MessageResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        existing = conn.execute(
            select(subscriptions.c.id).where(
                subscriptions.c.id == subscription_id, subscriptions.c.user_id == user_id
            )
        ).first()
        if not existing:
            raise HTTPException(status_code=404, detail="Subscription not found.")
        delete_reminders_where(conn, reminders.c.subscription_id == subscription_id)
        conn.execute(delete(subscriptions).where(subscriptions.c.id == subscription_id))
    return MessageResponse(message="Subscription deleted successfully.")


@app.get("/reminders", response_model=list[ReminderResponse])
def list_reminders(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[ReminderResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        rows = conn.execute(
            reminder_select(user_id).order_by(reminders.c.reminder_date.asc(), reminders.c.id.asc())
        ).mappings().all()
        return [reminder_response(conn, row) for row in rows]


@app.post("/reminders", response_model=ReminderResponse)
def create_reminder(
    payload: ReminderPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> ReminderResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = ReminderPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        subscription_exists = conn.execute(
            select(subscriptions.c.id).where(
                subscriptions.c.id == payload.subscription_id,
                subscriptions.c.user_id == user_id,
            )
        ).first()
        if not subscription_exists:
            raise HTTPException(status_code=404, detail="Subscription not found.")
        ensure_providers_owned(conn, user_id, payload.notification_provider_ids)
        reminder_id = conn.execute(
            insert(reminders)
            .values(
                user_id=user_id,
                subscription_id=payload.subscription_id,
                reminder_date=payload.reminder_date,
                is_read=False,
            )
            .returning(reminders.c.id)
        ).scalar_one()
        replace_reminder_providers(conn, reminder_id, payload.notification_provider_ids)
        row = conn.execute(
            reminder_select(user_id).where(reminders.c.id == reminder_id)
        ).mappings().first()
        return reminder_response(conn, row)


@app.get("/reminders/{reminder_id}", response_model=ReminderResponse)
def get_reminder(
    reminder_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> ReminderResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        row = conn.execute(
            reminder_select(user_id).where(reminders.c.id == reminder_id)
        ).mappings().first()
        if not row:
            raise HTTPException(status_code=404, detail="Reminder not found.")
        return reminder_response(conn, row)


@app.put("/reminders/{reminder_id}", response_model=ReminderResponse)
def update_reminder(
    reminder_id: int,
    payload: ReminderUpdatePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> ReminderResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = ReminderUpdatePayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        existing = conn.execute(
            select(reminders.c.id).where(reminders.c.id == reminder_id, reminders.c.user_id == user_id)
        ).first()
        if not existing:
            raise HTTPException(status_code=404, detail="Reminder not found.")

        values = {}
        if payload.reminder_date is not None:
            values["reminder_date"] = payload.reminder_date
        if payload.is_read is not None:
            values["is_read"] = payload.is_read
        if values:
            conn.execute(update(reminders).where(reminders.c.id == reminder_id).values(**values))
        if payload.notification_provider_ids is not None:
            ensure_providers_owned(conn, user_id, payload.notification_provider_ids)
            replace_reminder_providers(conn, reminder_id, payload.notification_provider_ids)
        row = conn.execute(
            reminder_select(user_id).where(reminders.c.id == reminder_id)
        ).mappings().first()
        return reminder_response(conn, row)


@app.delete("/reminders/{reminder_id}", response_model=MessageResponse)
def delete_reminder(
    reminder_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> MessageResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        existing = conn.execute(
            select(reminders.c.id).where(reminders.c.id == reminder_id, reminders.c.user_id == user_id)
        ).first()
        if not existing:
            raise HTTPException(status_code=404, detail="Reminder not found.")
        delete_reminders_where(conn, reminders.c.id == reminder_id)
    return MessageResponse(message="Reminder deleted successfully.")


@app.get("/notification-providers", response_model=list[NotificationProviderResponse])
def list_notification_providers(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[NotificationProviderResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        rows = conn.execute(
            select(notification_providers)
            .where(notification_providers.c.user_id == user_id)
            .order_by(notification_providers.c.created_at.desc(), notification_providers.c.id.desc())
        ).mappings().all()
    return [notification_provider_response(row) for row in rows]


@app.post("/notification-providers", response_model=NotificationProviderResponse)
def create_notification_provider(
    payload: NotificationProviderPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> NotificationProviderResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = NotificationProviderPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        provider_id = conn.execute(
            insert(notification_providers)
            .values(user_id=user_id, **payload.model_dump())
            .returning(notification_providers.c.id)
        ).scalar_one()
        row = conn.execute(
            select(notification_providers).where(notification_providers.c.id == provider_id)
        ).mappings().first()
    return notification_provider_response(row)


@app.get("/notification-providers/{provider_id}", response_model=NotificationProviderResponse)
def get_notification_provider(
    provider_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> NotificationProviderResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        row = conn.execute(
            select(notification_providers).where(
                notification_providers.c.id == provider_id,
                notification_providers.c.user_id == user_id,
            )
        ).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="Notification provider not found.")
    return notification_provider_response(row)


@app.put("/notification-providers/{provider_id}", response_model=NotificationProviderResponse)
def update_notification_provider(
    provider_id: int,
    payload: NotificationProviderPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> NotificationProviderResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = NotificationProviderPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        result = conn.execute(
            update(notification_providers)
            .where(
                notification_providers.c.id == provider_id,
                notification_providers.c.user_id == user_id,
            )
            .values(**payload.model_dump())
        )
        if result.rowcount == 0:
            raise HTTPException(status_code=404, detail="Notification provider not found.")
        row = conn.execute(
            select(notification_providers).where(notification_providers.c.id == provider_id)
        ).mappings().first()
    return notification_provider_response(row)


@app.delete("/notification-providers/{provider_id}", response_model=MessageResponse)
def delete_notification_provider(
    provider_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> MessageResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        existing = conn.execute(
            select(notification_providers.c.id).where(
                notification_providers.c.id == provider_id,
                notification_providers.c.user_id == user_id,
            )
        ).first()
        if not existing:
            raise HTTPException(status_code=404, detail="Notification provider not found.")
        conn.execute(delete(reminder_providers).where(reminder_providers.c.provider_id == provider_id))
        conn.execute(delete(notification_providers).where(notification_providers.c.id == provider_id))
    return MessageResponse(message="Notification provider deleted successfully.")


@app.get("/analytics/monthly", response_model=MonthlyAnalyticsResponse)
def monthly_analytics(
    year: str | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> MonthlyAnalyticsResponse:
    user_id = get_user_id(x_user_id)
    try:
        year_value = parse_year_value(year, date.today().year)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        currency = resolve_user_currency(conn, user_id)
        records = load_subscription_records(conn, user_id)
    try:
        result = aggregate_monthly(records, year_value, currency, RATE_FETCHER)
    except CurrencyConversionError as exc:
        logger.exception("Error fetching monthly analytics for user %s", user_id)
        raise HTTPException(status_code=500, detail=ANALYTICS_ERROR) from exc

    return MonthlyAnalyticsResponse(
        years=result.years,
        monthly_data=result.monthly_data,
        categories=[category_meta_response(category) for category in result.categories],
    )


@app.get("/analytics/yearly", response_model=YearlyAnalyticsResponse)
def yearly_analytics(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> YearlyAnalyticsResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        currency = resolve_user_currency(conn, user_id)
        records = load_subscription_records(conn, user_id)
    try:
        result = aggregate_yearly(records, currency, RATE_FETCHER)
    except CurrencyConversionError as exc:
        logger.exception("Error fetching yearly analytics for user %s", user_id)
        raise HTTPException(status_code=500, detail=ANALYTICS_ERROR) from exc

    return YearlyAnalyticsResponse(
        yearly_data=result.yearly_data,
        categories=[category_meta_response(category) for category in result.categories],
        currency=result.currency,
    )


@app.get("/analytics/summary", response_model=AnalyticsSummaryResponse)
def analytics_summary(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> AnalyticsSummaryResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        currency = resolve_user_currency(conn, user_id)
        records = load_subscription_records(conn, user_id)
    try:
        breakdown = category_breakdown(records, currency, RATE_FETCHER)
    except CurrencyConversionError as exc:
        logger.exception("Error fetching analytics summary for user %s", user_id)
        raise HTTPException(status_code=500, detail=ANALYTICS_ERROR) from exc

    renewals = upcoming_renewals(records)
    return AnalyticsSummaryResponse(
        monthly_total=breakdown.monthly_total,
        yearly_total=breakdown.yearly_total,
        currency=currency,
        active_subscriptions_count=len(records),
        upcoming_renewals_count=len(renewals),
        upcoming_renewals=[
            UpcomingRenewalResponse(
                id=entry.subscription.id,
                name=entry.subscription.name,
                cost=entry.subscription.cost,
                currency=entry.subscription.currency,
                billing_frequency=entry.subscription.billing_frequency,
                next_renewal=entry.next_renewal,
                category=entry.subscription.category_or_default.name,
                category_color=entry.subscription.category_or_default.color,
            )
            for entry in renewals
        ],
        category_spending=CategorySpendingResponse(
            breakdown=[
                CategoryShareResponse(
                    name=share.name,
                    color=share.color,
                    amount=share.amount,
                    percentage=share.percentage,
                )
                for share in breakdown.breakdown
            ],
            total_yearly_spend=breakdown.yearly_total,
        ),
    )


@app.get("/analytics/details", response_model=AnalyticsDetailsResponse)
def analytics_details(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> AnalyticsDetailsResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        currency = resolve_user_currency(conn, user_id)
        records = load_subscription_records(conn, user_id)
    try:
        summary = summarize_active_spend(records, currency, RATE_FETCHER)
    except CurrencyConversionError as exc:
        logger.exception("Error fetching analytics details for user %s", user_id)
        raise HTTPException(status_code=500, detail=ANALYTICS_ERROR) from exc

    largest = None
    if summary.largest_expense is not None:
        expense = summary.largest_expense
        largest = LargestExpenseResponse(
            id=expense.id,
            name=expense.name,
            cost=expense.cost,
            currency=expense.currency,
            billing_frequency=expense.billing_frequency,
            normalized_monthly_cost=expense.normalized_monthly_cost,
            category=category_meta_response(expense.category) if expense.category else None,
        )
    return AnalyticsDetailsResponse(
        average_monthly=MoneyValue(value=summary.average_monthly, currency=summary.currency),
        average_yearly=MoneyValue(value=summary.average_yearly, currency=summary.currency),
        largest_expense=largest,
    )

import logging
from datetime import date, datetime
from decimal import Decimal

import bcrypt
from fastapi import FastAPI, HTTPException, Header, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
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
    func,
    insert,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError

from backend.budget_engine import (
    BudgetDefinition,
    EnrichedBudget,
    Transaction,
    assemble_budgets,
    month_bounds,
    month_start,
)
from backend.budget_refresh import BudgetSnapshotCache, CircuitBreaker, RecomputeUnavailable
from backend.budget_summary import BudgetSummary, sort_by_percentage, summarize_budgets
from backend.config import get_settings

settings = get_settings()
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

connect_args = {}
if settings.database_url.startswith("sqlite"):
    connect_args = {"check_same_thread": False}

engine = create_engine(settings.database_url, connect_args=connect_args)
metadata = MetaData()

DEFAULT_CATEGORIES = [
    "Groceries",
    "Rent",
    "Dining",
    "Utilities",
    "Travel",
    "Subscriptions",
    "Other",
]

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), unique=True, nullable=False),
    Column("hashed_password", String(255), nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

category_groups = Table(
    "category_groups",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint("user_id", "name", name="uq_category_groups_user_name"),
)

categories = Table(
    "categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("group_id", Integer, ForeignKey("category_groups.id")),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint("user_id", "name", name="uq_categories_user_name"),
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("type", String(20), nullable=False),
    Column("category_id", Integer, ForeignKey("categories.id")),
    Column("date", DateTime, nullable=False),
    Column("notes", String(500)),
)

budgets = Table(
    "budgets",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("period", Date, nullable=False),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("category_id", Integer, ForeignKey("categories.id")),
    Column("group_id", Integer, ForeignKey("category_groups.id")),
    Column("note", String(500)),
    Column("is_recurring", Boolean, nullable=False, server_default="0"),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint("user_id", "period", "category_id", name="uq_budgets_period_category"),
    UniqueConstraint("user_id", "period", "group_id", name="uq_budgets_period_group"),
)

budget_categories = Table(
    "budget_categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("budget_id", Integer, ForeignKey("budgets.id", ondelete="CASCADE"), nullable=False),
    Column("category_id", Integer, ForeignKey("categories.id"), nullable=False),
    UniqueConstraint("budget_id", "category_id", name="uq_budget_categories_pair"),
)


@app.on_event("startup")
def init_db() -> None:
    metadata.create_all(engine)


class CredentialsPayload(BaseModel):
    email: str
    password: str


class UserResponse(BaseModel):
    id: int
    email: str
    created_at: datetime | None = None


class TransactionType:
    values = {"income", "expense", "transfer"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValueError("Invalid transaction type.")
        return normalized


class CategoryGroupPayload(BaseModel):
    name: str

    @classmethod
    def validate_payload(cls, payload: "CategoryGroupPayload") -> "CategoryGroupPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Group name required.")
        return payload


class CategoryGroupResponse(BaseModel):
    id: int
    user_id: int
    name: str
    created_at: datetime | None = None


class CategoryPayload(BaseModel):
    name: str
    group_id: int | None = None

    @classmethod
    def validate_payload(cls, payload: "CategoryPayload") -> "CategoryPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Category name required.")
        return payload


class CategoryResponse(BaseModel):
    id: int
    user_id: int
    name: str
    group_id: int | None = None
    created_at: datetime | None = None


class TransactionPayload(BaseModel):
    amount: Decimal
    type: str
    category_id: int | None = None
    date: datetime
    notes: str | None = None

    @classmethod
    def validate_payload(cls, payload: "TransactionPayload") -> "TransactionPayload":
        payload.type = TransactionType.validate(payload.type)
        payload.notes = payload.notes.strip() if payload.notes else None
        if payload.amount <= 0:
            raise ValueError("Amount must be greater than zero.")
        return payload


class TransactionResponse(TransactionPayload):
    id: int
    user_id: int


class BudgetPayload(BaseModel):
    period: date
    amount: Decimal
    category_id: int | None = None
    group_id: int | None = None
    category_ids: list[int] | None = None
    note: str | None = None
    is_recurring: bool = False

    @classmethod
    def validate_payload(cls, payload: "BudgetPayload") -> "BudgetPayload":
        if payload.amount < 0:
            raise ValueError("Budget amount cannot be negative.")
        if (payload.category_id is None) == (payload.group_id is None):
            raise ValueError("Budget requires exactly one of category_id or group_id.")
        if payload.category_id is not None and payload.category_ids:
            raise ValueError("Single-category budgets cannot link extra categories.")
        if payload.category_ids is not None:
            payload.category_ids = sorted(set(payload.category_ids))
        payload.period = month_start(payload.period)
        payload.note = payload.note.strip() if payload.note else None
        return payload


class BudgetUpdatePayload(BaseModel):
    amount: Decimal
    note: str | None = None

    @classmethod
    def validate_payload(cls, payload: "BudgetUpdatePayload") -> "BudgetUpdatePayload":
        if payload.amount < 0:
            raise ValueError("Budget amount cannot be negative.")
        payload.note = payload.note.strip() if payload.note else None
        return payload


class BudgetResponse(BaseModel):
    id: int
    period: date
    amount: Decimal
    category_id: int | None = None
    group_id: int | None = None
    category_ids: list[int] = []
    note: str | None = None
    is_recurring: bool = False


class EnrichedBudgetResponse(BudgetResponse):
    display_name: str
    actual_spend: Decimal
    percentage: float
    status: str
    remaining: Decimal
    over_budget: Decimal


class DashboardBudgetsResponse(BaseModel):
    period: date
    budget_count: int
    total_budgeted: Decimal
    total_spent: Decimal
    total_remaining: Decimal
    overall_percentage: float
    over: list[EnrichedBudgetResponse]
    warning: list[EnrichedBudgetResponse]
    on_track: list[EnrichedBudgetResponse]
    needs_attention: list[EnrichedBudgetResponse]


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


def parse_period(value: str | None, today: date) -> date:
    if not value:
        return month_start(today)
    raw = value.strip()
    try:
        if len(raw) == 7:
            return datetime.strptime(raw, "%Y-%m").date()
        return month_start(date.fromisoformat(raw))
    except ValueError as exc:
        raise ValueError("Period must be formatted as YYYY-MM.") from exc


def resolve_period(value: str | None) -> date:
    try:
        return parse_period(value, date.today())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def ensure_default_categories(conn, user_id: int) -> None:
    existing = conn.execute(
        select(categories.c.id).where(categories.c.user_id == user_id).limit(1)
    ).first()
    if existing:
        return
    conn.execute(
        insert(categories),
        [{"user_id": user_id, "name": name} for name in DEFAULT_CATEGORIES],
    )


def owned_category_ids(conn, user_id: int, category_ids: list[int]) -> set[int]:
    if not category_ids:
        return set()
    rows = conn.execute(
        select(categories.c.id).where(
            categories.c.user_id == user_id, categories.c.id.in_(category_ids)
        )
    ).all()
    return {row[0] for row in rows}


def group_exists(conn, user_id: int, group_id: int) -> bool:
    row = conn.execute(
        select(category_groups.c.id).where(
            category_groups.c.id == group_id, category_groups.c.user_id == user_id
        )
    ).first()
    return bool(row)


def category_in_use(conn, user_id: int, category_id: int) -> bool:
    txn_match = conn.execute(
        select(transactions.c.id)
        .where(transactions.c.user_id == user_id, transactions.c.category_id == category_id)
        .limit(1)
    ).first()
    if txn_match:
        return True
    budget_match = conn.execute(
        select(budgets.c.id)
        .where(budgets.c.user_id == user_id, budgets.c.category_id == category_id)
        .limit(1)
    ).first()
    if budget_match:
        return True
    link_match = conn.execute(
        select(budget_categories.c.id)
        .where(budget_categories.c.category_id == category_id)
        .limit(1)
    ).first()
    return bool(link_match)


def budget_scope_key(row) -> tuple[str, int] | None:
    if row["group_id"] is not None:
        return ("group", row["group_id"])
    if row["category_id"] is not None:
        return ("category", row["category_id"])
    return None


def load_linked_category_ids(conn, budget_ids: list[int]) -> dict[int, set[int]]:
    linked: dict[int, set[int]] = {budget_id: set() for budget_id in budget_ids}
    if not budget_ids:
        return linked
    rows = conn.execute(
        select(budget_categories.c.budget_id, budget_categories.c.category_id).where(
            budget_categories.c.budget_id.in_(budget_ids)
        )
    ).all()
    for budget_id, category_id in rows:
        linked[budget_id].add(category_id)
    return linked


def ensure_recurring_budgets(conn, user_id: int, period: date) -> int:
    existing = conn.execute(
        select(budgets.c.id)
        .where(budgets.c.user_id == user_id, budgets.c.period == period)
        .limit(1)
    ).first()
    if existing:
        return 0

    rows = conn.execute(
        select(budgets)
        .where(
            budgets.c.user_id == user_id,
            budgets.c.is_recurring.is_(True),
            budgets.c.period < period,
        )
        .order_by(budgets.c.period.desc(), budgets.c.id.asc())
    ).mappings().all()

    latest: dict[tuple[str, int], dict] = {}
    for row in rows:
        key = budget_scope_key(row)
        if key is not None and key not in latest:
            latest[key] = row
    if not latest:
        return 0

    sources = sorted(latest.values(), key=lambda row: row["id"])
    linked = load_linked_category_ids(conn, [row["id"] for row in sources])
    for row in sources:
        new_id = conn.execute(
            insert(budgets)
            .values(
                user_id=user_id,
                period=period,
                amount=row["amount"],
                category_id=row["category_id"],
                group_id=row["group_id"],
                note=row["note"],
                is_recurring=True,
            )
            .returning(budgets.c.id)
        ).scalar_one()
        category_ids = sorted(linked.get(row["id"], set()))
        if row["group_id"] is not None and category_ids:
            conn.execute(
                insert(budget_categories),
                [{"budget_id": new_id, "category_id": cid} for cid in category_ids],
            )
    logger.info(
        f"recurring_budgets: user_id={user_id} period={period.isoformat()} created={len(sources)}"
    )
    return len(sources)


def load_budget_definitions(conn, user_id: int, period: date) -> list[BudgetDefinition]:
    join_stmt = budgets.outerjoin(categories, budgets.c.category_id == categories.c.id).outerjoin(
        category_groups, budgets.c.group_id == category_groups.c.id
    )
    rows = conn.execute(
        select(
            budgets,
            categories.c.name.label("category_name"),
            category_groups.c.name.label("group_name"),
        )
        .select_from(join_stmt)
        .where(budgets.c.user_id == user_id, budgets.c.period == period)
        .order_by(budgets.c.id.asc())
    ).mappings().all()
    linked = load_linked_category_ids(conn, [row["id"] for row in rows])
    return [
        BudgetDefinition(
            id=row["id"],
            period=row["period"],
            amount=row["amount"],
            category_id=row["category_id"],
            group_id=row["group_id"],
            linked_category_ids=linked.get(row["id"], set()),
            category_name=row["category_name"],
            group_name=row["group_name"],
            note=row["note"],
            is_recurring=bool(row["is_recurring"]),
        )
        for row in rows
    ]


def load_period_expenses(conn, user_id: int, period: date) -> list[Transaction]:
    start, end = month_bounds(period)
    rows = conn.execute(
        select(
            transactions.c.amount,
            transactions.c.type,
            transactions.c.category_id,
            transactions.c.date,
        ).where(
            transactions.c.user_id == user_id,
            transactions.c.type == "expense",
            transactions.c.date >= start,
            transactions.c.date <= end,
        )
        .order_by(transactions.c.date.asc(), transactions.c.id.asc())
    ).mappings().all()
    return [
        Transaction(
            amount=row["amount"],
            type=row["type"],
            date=row["date"],
            category_id=row["category_id"],
        )
        for row in rows
    ]


def load_enriched_budgets(user_id: int, period: date) -> list[EnrichedBudget]:
    try:
        with engine.begin() as conn:
            ensure_recurring_budgets(conn, user_id, period)
    except IntegrityError:
        logger.info(
            f"recurring_budgets: user_id={user_id} period={period.isoformat()} already carried forward"
        )
    with engine.begin() as conn:
        definitions = load_budget_definitions(conn, user_id, period)
        expenses = load_period_expenses(conn, user_id, period)
    return assemble_budgets(definitions, expenses, period)


def build_budget_summary(key: tuple[int, date]) -> BudgetSummary:
    user_id, period = key
    return summarize_budgets(load_enriched_budgets(user_id, period))


budget_snapshots = BudgetSnapshotCache(
    build_budget_summary,
    refresh_interval=settings.dashboard_refresh_seconds,
    max_entries=settings.dashboard_cache_max_entries,
    breaker=CircuitBreaker(
        max_failures=settings.dashboard_breaker_failures,
        reset_after=settings.dashboard_breaker_reset_seconds,
    ),
)


def invalidate_budget_views(user_id: int, source: str) -> None:
    budget_snapshots.invalidate(lambda key: key[0] == user_id, source=source)


def to_budget_response(row, category_ids: set[int]) -> BudgetResponse:
    return BudgetResponse(
        id=row["id"],
        period=row["period"],
        amount=row["amount"],
        category_id=row["category_id"],
        group_id=row["group_id"],
        category_ids=sorted(category_ids),
        note=row["note"],
        is_recurring=bool(row["is_recurring"]),
    )


def to_enriched_response(budget: EnrichedBudget) -> EnrichedBudgetResponse:
    definition = budget.definition
    return EnrichedBudgetResponse(
        id=definition.id,
        period=definition.period,
        amount=budget.amount,
        category_id=definition.category_id,
        group_id=definition.group_id,
        category_ids=sorted(definition.linked_category_ids),
        note=definition.note,
        is_recurring=definition.is_recurring,
        display_name=budget.display_name,
        actual_spend=budget.actual_spend,
        percentage=float(budget.percentage),
        status=budget.status,
        remaining=budget.remaining,
        over_budget=budget.over_budget,
    )


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.post("/auth/signup", response_model=UserResponse)
def signup(payload: CredentialsPayload) -> UserResponse:
    email = payload.email.strip().lower()
    if not email or not payload.password:
        raise HTTPException(status_code=400, detail="Email and password required.")
    hashed_password = hash_password(payload.password)

    stmt = (
        insert(users)
        .values(email=email, hashed_password=hashed_password)
        .returning(users.c.id, users.c.email, users.c.created_at)
    )
    try:
        with engine.begin() as conn:
            result = conn.execute(stmt)
            row = result.mappings().first()
            if row:
                ensure_default_categories(conn, row["id"])
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Email already exists.") from exc

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create user.")
    return UserResponse(id=row["id"], email=row["email"], created_at=row["created_at"])


@app.post("/auth/login", response_model=UserResponse)
def login(payload: CredentialsPayload) -> UserResponse:
    email = payload.email.strip().lower()
    with engine.begin() as conn:
        result = conn.execute(select(users).where(users.c.email == email))
        row = result.mappings().first()

    if not row or not verify_password(payload.password, row["hashed_password"]):
        raise HTTPException(status_code=401, detail="Invalid credentials.")

    return UserResponse(id=row["id"], email=row["email"], created_at=row["created_at"])


@app.get("/category-groups", response_model=list[CategoryGroupResponse])
def list_category_groups(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[CategoryGroupResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        rows = conn.execute(
            select(category_groups)
            .where(category_groups.c.user_id == user_id)
            .order_by(category_groups.c.name.asc())
        ).mappings().all()
    return [
        CategoryGroupResponse(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            created_at=row["created_at"],
        )
        for row in rows
    ]


@app.post("/category-groups", response_model=CategoryGroupResponse)
def create_category_group(
    payload: CategoryGroupPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> CategoryGroupResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = CategoryGroupPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    stmt = (
        insert(category_groups)
        .values(user_id=user_id, name=payload.name)
        .returning(
            category_groups.c.id,
            category_groups.c.user_id,
            category_groups.c.name,
            category_groups.c.created_at,
        )
    )
    try:
        with engine.begin() as conn:
            row = conn.execute(stmt).mappings().first()
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Group already exists.") from exc

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create group.")
    return CategoryGroupResponse(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        created_at=row["created_at"],
    )


@app.get("/categories", response_model=list[CategoryResponse])
def list_categories(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[CategoryResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        ensure_default_categories(conn, user_id)
        rows = conn.execute(
            select(categories)
            .where(categories.c.user_id == user_id)
            .order_by(categories.c.name.asc())
        ).mappings().all()
    return [
        CategoryResponse(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            group_id=row["group_id"],
            created_at=row["created_at"],
        )
        for row in rows
    ]


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
        .values(user_id=user_id, name=payload.name, group_id=payload.group_id)
        .returning(
            categories.c.id,
            categories.c.user_id,
            categories.c.name,
            categories.c.group_id,
            categories.c.created_at,
        )
    )
    try:
        with engine.begin() as conn:
            if payload.group_id is not None and not group_exists(conn, user_id, payload.group_id):
                raise HTTPException(status_code=404, detail="Group not found.")
            row = conn.execute(stmt).mappings().first()
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Category already exists.") from exc

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create category.")
    invalidate_budget_views(user_id, "category")
    return CategoryResponse(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        group_id=row["group_id"],
        created_at=row["created_at"],
    )


@app.delete("/categories/{category_id}")
def delete_category(
    category_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        row = conn.execute(
            select(categories.c.id).where(
                categories.c.id == category_id, categories.c.user_id == user_id
            )
        ).first()
        if not row:
            raise HTTPException(status_code=404, detail="Category not found.")
        if category_in_use(conn, user_id, category_id):
            raise HTTPException(status_code=409, detail="Category is in use.")
        conn.execute(
            categories.delete().where(
                categories.c.id == category_id, categories.c.user_id == user_id
            )
        )
    invalidate_budget_views(user_id, "category")
    return {"status": "deleted"}


@app.get("/transactions", response_model=list[TransactionResponse])
def list_transactions(
    period: str | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[TransactionResponse]:
    user_id = get_user_id(x_user_id)
    conditions = [transactions.c.user_id == user_id]
    if period:
        start, end = month_bounds(resolve_period(period))
        conditions.extend([transactions.c.date >= start, transactions.c.date <= end])
    with engine.begin() as conn:
        rows = conn.execute(
            select(transactions)
            .where(*conditions)
            .order_by(transactions.c.date.desc(), transactions.c.id.desc())
        ).mappings().all()
    return [
        TransactionResponse(
            id=row["id"],
            user_id=row["user_id"],
            amount=row["amount"],
            type=row["type"],
            category_id=row["category_id"],
            date=row["date"],
            notes=row["notes"],
        )
        for row in rows
    ]


@app.post("/transactions", response_model=TransactionResponse)
def create_transaction(
    payload: TransactionPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> TransactionResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = TransactionPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        if payload.category_id is not None and not owned_category_ids(
            conn, user_id, [payload.category_id]
        ):
            raise HTTPException(status_code=404, detail="Category not found.")
        row = conn.execute(
            insert(transactions)
            .values(
                user_id=user_id,
                amount=payload.amount,
                type=payload.type,
                category_id=payload.category_id,
                date=payload.date,
                notes=payload.notes,
            )
            .returning(*transactions.c)
        ).mappings().first()

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create transaction.")
    invalidate_budget_views(user_id, "transaction")
    return TransactionResponse(
        id=row["id"],
        user_id=row["user_id"],
        amount=row["amount"],
        type=row["type"],
        category_id=row["category_id"],
        date=row["date"],
        notes=row["notes"],
    )


@app.delete("/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    stmt = transactions.delete().where(
        transactions.c.id == transaction_id, transactions.c.user_id == user_id
    )
    with engine.begin() as conn:
        result = conn.execute(stmt)
        if result.rowcount == 0:
            raise HTTPException(status_code=404, detail="Transaction not found.")
    invalidate_budget_views(user_id, "transaction")
    return {"status": "deleted"}


@app.get("/budgets", response_model=list[EnrichedBudgetResponse])
def list_budgets(
    period: str | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[EnrichedBudgetResponse]:
    user_id = get_user_id(x_user_id)
    budget_period = resolve_period(period)
    return [to_enriched_response(budget) for budget in load_enriched_budgets(user_id, budget_period)]


@app.post("/budgets", response_model=BudgetResponse)
def create_budget(
    payload: BudgetPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> BudgetResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = BudgetPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    scope = "group" if payload.group_id is not None else "category"
    conflict = f"Budget already exists for this {scope} in this period."
    try:
        with engine.begin() as conn:
            linked_ids: set[int] = set()
            if payload.group_id is not None:
                if not group_exists(conn, user_id, payload.group_id):
                    raise HTTPException(status_code=404, detail="Group not found.")
                if payload.category_ids is None:
                    linked_ids = {
                        row[0]
                        for row in conn.execute(
                            select(categories.c.id).where(
                                categories.c.user_id == user_id,
                                categories.c.group_id == payload.group_id,
                            )
                        ).all()
                    }
                else:
                    linked_ids = owned_category_ids(conn, user_id, payload.category_ids)
                    if len(linked_ids) != len(payload.category_ids):
                        raise HTTPException(status_code=404, detail="Category not found.")
                if not linked_ids:
                    raise HTTPException(
                        status_code=400,
                        detail="Grouped budget requires at least one category.",
                    )
            elif not owned_category_ids(conn, user_id, [payload.category_id]):
                raise HTTPException(status_code=404, detail="Category not found.")

            scope_column = budgets.c.group_id if payload.group_id is not None else budgets.c.category_id
            scope_value = payload.group_id if payload.group_id is not None else payload.category_id
            exists = conn.execute(
                select(budgets.c.id).where(
                    budgets.c.user_id == user_id,
                    budgets.c.period == payload.period,
                    scope_column == scope_value,
                )
            ).first()
            if exists:
                raise HTTPException(status_code=409, detail=conflict)

            row = conn.execute(
                insert(budgets)
                .values(
                    user_id=user_id,
                    period=payload.period,
                    amount=payload.amount,
                    category_id=payload.category_id,
                    group_id=payload.group_id,
                    note=payload.note,
                    is_recurring=payload.is_recurring,
                )
                .returning(*budgets.c)
            ).mappings().first()
            if row and linked_ids:
                conn.execute(
                    insert(budget_categories),
                    [
                        {"budget_id": row["id"], "category_id": category_id}
                        for category_id in sorted(linked_ids)
                    ],
                )
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail=conflict) from exc

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create budget.")
    logger.info(
        f"budget_created: user_id={user_id} budget_id={row['id']} scope={scope} "
        f"period={payload.period.isoformat()}"
    )
    invalidate_budget_views(user_id, "budget")
    return to_budget_response(row, linked_ids)


@app.put("/budgets/{budget_id}", response_model=BudgetResponse)
def update_budget(
    budget_id: int,
    payload: BudgetUpdatePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> BudgetResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = BudgetUpdatePayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    stmt = (
        update(budgets)
        .where(budgets.c.id == budget_id, budgets.c.user_id == user_id)
        .values(amount=payload.amount, note=payload.note, updated_at=func.now())
        .returning(*budgets.c)
    )
    with engine.begin() as conn:
        row = conn.execute(stmt).mappings().first()
        if not row:
            raise HTTPException(status_code=404, detail="Budget not found.")
        linked = load_linked_category_ids(conn, [budget_id])

    invalidate_budget_views(user_id, "budget")
    return to_budget_response(row, linked[budget_id])


@app.delete("/budgets/{budget_id}")
def delete_budget(
    budget_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        owned = conn.execute(
            select(budgets.c.id).where(budgets.c.id == budget_id, budgets.c.user_id == user_id)
        ).first()
        if not owned:
            raise HTTPException(status_code=404, detail="Budget not found.")
        conn.execute(budget_categories.delete().where(budget_categories.c.budget_id == budget_id))
        conn.execute(
            budgets.delete().where(budgets.c.id == budget_id, budgets.c.user_id == user_id)
        )
    invalidate_budget_views(user_id, "budget")
    return {"status": "deleted"}


@app.get("/dashboard/budgets", response_model=DashboardBudgetsResponse)
def dashboard_budgets(
    period: str | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> DashboardBudgetsResponse:
    user_id = get_user_id(x_user_id)
    budget_period = resolve_period(period)
    try:
        summary = budget_snapshots.get((user_id, budget_period))
    except RecomputeUnavailable as exc:
        logger.warning(f"dashboard_budgets: user_id={user_id} unavailable: {exc}")
        raise HTTPException(status_code=503, detail="Budget summary temporarily unavailable.") from exc

    totals = summary.totals
    return DashboardBudgetsResponse(
        period=budget_period,
        budget_count=summary.budget_count,
        total_budgeted=totals.total_budgeted,
        total_spent=totals.total_spent,
        total_remaining=totals.total_remaining,
        overall_percentage=float(totals.overall_percentage),
        over=[to_enriched_response(budget) for budget in summary.over],
        warning=[to_enriched_response(budget) for budget in summary.warning],
        on_track=[to_enriched_response(budget) for budget in summary.on_track],
        needs_attention=[to_enriched_response(budget) for budget in summary.needs_attention],
    )


@app.get("/reports/budgets", response_model=list[EnrichedBudgetResponse])
def report_budgets(
    period: str | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[EnrichedBudgetResponse]:
    user_id = get_user_id(x_user_id)
    budget_period = resolve_period(period)
    enriched = load_enriched_budgets(user_id, budget_period)
    return [to_enriched_response(budget) for budget in sort_by_percentage(enriched)]

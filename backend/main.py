from datetime import date, datetime
from decimal import Decimal
import logging

import bcrypt
from fastapi import FastAPI, HTTPException, Header, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError

from backend.budget_engine import BudgetRule, Transaction, evaluate_budget
from backend.currency_conversion import (
    BASE_CURRENCY,
    FrankfurterRateProvider,
    StaticRateProvider,
    normalize_currency,
    parse_amount,
)
from backend.currency_display import ConvertedAmount
from backend.currency_formatting import SUPPORTED_CURRENCIES, is_supported_currency
from backend.currency_store import PREFERRED_CURRENCY_KEY, CurrencyStore
from backend.database import (
    accounts,
    budget_rules,
    categories,
    create_database_engine,
    metadata,
    transactions,
    users,
)
from backend.exchange_rates import ExchangeRateService
from backend.settings import Settings, configure_logging

SETTINGS = Settings.from_env()
configure_logging(SETTINGS.log_level)
logger = logging.getLogger("ledgerly.api")

app = FastAPI(title="Ledgerly")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[SETTINGS.frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

engine = create_database_engine(SETTINGS.database_url)


def build_rate_provider(settings: Settings):
    if settings.exchange_rate_source == "static":
        return StaticRateProvider()
    # Live failures must reach the service so it falls back to stored rates.
    return FrankfurterRateProvider(cache_ttl_seconds=settings.exchange_rate_cache_hours * 60 * 60)


RATE_SERVICE = ExchangeRateService(
    engine,
    build_rate_provider(SETTINGS),
    cache_hours=SETTINGS.exchange_rate_cache_hours,
    retention_days=SETTINGS.exchange_rate_retention_days,
)

DEFAULT_CATEGORIES = [
    "Groceries",
    "Rent",
    "Dining",
    "Utilities",
    "Travel",
    "Subscriptions",
    "Other",
]


@app.on_event("startup")
def init_db() -> None:
    metadata.create_all(engine)
    logger.info("Initializing exchange rates...")
    RATE_SERVICE.refresh_all_rates()


class CredentialsPayload(BaseModel):
    email: str
    password: str


class UserResponse(BaseModel):
    id: int
    email: str
    created_at: datetime | None = None


class UserSettingsPayload(BaseModel):
    preferred_currency: str | None = None


class UserSettingsResponse(BaseModel):
    id: int
    email: str
    preferred_currency: str
    supported_currencies: list[str]


ACCOUNT_TYPES = {"checking", "credit", "investment", "savings"}
TRANSACTION_TYPES = {"income", "expense"}
CATEGORY_GROUPS = {"needs", "wants", "investments"}
BUDGET_RULE_TYPES = {"category_cap", "account_cap", "savings_target"}


def normalize_choice(value: str, choices: set[str], label: str) -> str:
    normalized = value.strip().lower()
    if normalized not in choices:
        raise ValueError(f"Invalid {label}.")
    return normalized


class AccountPayload(BaseModel):
    name: str
    type: str
    institution: str | None = None

    @classmethod
    def validate_payload(cls, payload: "AccountPayload") -> "AccountPayload":
        payload.type = normalize_choice(payload.type, ACCOUNT_TYPES, "account type")
        payload.name = payload.name.strip()
        payload.institution = payload.institution.strip() if payload.institution else None
        if not payload.name:
            raise ValueError("Account name required.")
        return payload


class AccountResponse(BaseModel):
    id: int
    user_id: int
    name: str
    type: str
    institution: str | None = None
    created_at: datetime | None = None


class CategoryPayload(BaseModel):
    name: str
    group: str | None = None

    @classmethod
    def validate_payload(cls, payload: "CategoryPayload") -> "CategoryPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Category name required.")
        if payload.group is not None:
            payload.group = normalize_choice(payload.group, CATEGORY_GROUPS, "category group")
        return payload


class CategoryResponse(BaseModel):
    id: int
    user_id: int
    name: str
    group: str | None = None
    created_at: datetime | None = None


class TransactionPayload(BaseModel):
    account_id: int
    amount: Decimal
    currency: str | None = None
    type: str
    category: str | None = None
    date: date
    notes: str | None = None

    @classmethod
    def validate_payload(cls, payload: "TransactionPayload") -> "TransactionPayload":
        payload.type = normalize_choice(payload.type, TRANSACTION_TYPES, "transaction type")
        if payload.category is not None:
            payload.category = payload.category.strip() or None
        payload.currency = normalize_currency(payload.currency) if payload.currency else None
        payload.notes = payload.notes.strip() if payload.notes else None
        if not payload.amount.is_finite() or payload.amount <= 0:
            raise ValueError("Amount must be greater than zero.")
        return payload


class TransactionResponse(BaseModel):
    id: int
    user_id: int
    account_id: int
    amount: Decimal
    currency: str
    type: str
    category: str | None = None
    date: date
    notes: str | None = None


class BudgetRulePayload(BaseModel):
    rule_type: str
    amount: Decimal
    category: str | None = None
    account_id: int | None = None

    @classmethod
    def validate_payload(cls, payload: "BudgetRulePayload") -> "BudgetRulePayload":
        normalized_type = normalize_choice(payload.rule_type, BUDGET_RULE_TYPES, "budget rule type")
        payload.rule_type = normalized_type
        if payload.amount <= 0:
            raise ValueError("Budget amount must be greater than zero.")

        payload.category = payload.category.strip() if payload.category else None
        if normalized_type == "category_cap":
            if not payload.category:
                raise ValueError("Category cap requires a category.")
            payload.account_id = None
        elif normalized_type == "account_cap":
            if payload.account_id is None:
                raise ValueError("Account cap requires an account.")
            payload.category = None
        else:
            payload.category = None
            payload.account_id = None
        return payload


class BudgetRuleResponse(BaseModel):
    id: int
    user_id: int
    rule_type: str
    amount: Decimal
    category: str | None = None
    account_id: int | None = None
    created_at: datetime | None = None


class BudgetEvaluationResponse(BaseModel):
    rule_id: int
    rule_type: str
    amount: Decimal
    category: str | None = None
    account_id: int | None = None
    period: str
    start_date: date
    end_date: date
    current_value: Decimal
    remaining: Decimal
    status: str
    currency: str
    source_currencies: list[str]
    unconverted_currencies: list[str]


class SupportedCurrenciesResponse(BaseModel):
    currencies: list[str]


class ExchangeRateResponse(BaseModel):
    from_currency: str
    to_currency: str
    rate: Decimal
    fetched_at: datetime


class ConversionResponse(BaseModel):
    original_amount: Decimal
    original_currency: str
    converted_amount: Decimal
    target_currency: str
    rate: Decimal


class RateEntry(BaseModel):
    currency: str
    rate: Decimal
    source: str
    fetched_at: datetime


class AllRatesResponse(BaseModel):
    base_currency: str
    rates: list[RateEntry]


class RateHistoryEntry(BaseModel):
    date: datetime
    rate: Decimal


class RateHistoryResponse(BaseModel):
    from_currency: str
    to_currency: str
    days: int
    history: list[RateHistoryEntry]


class RefreshResponse(BaseModel):
    refreshed: int
    removed: int


class AmountDisplayResponse(BaseModel):
    text: str
    value: Decimal
    currency: str
    original_currency: str
    was_converted: bool
    title: str | None = None
    html: str


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


class UserPreferenceStorage:
    """Preference storage backed by the user's row."""

    def __init__(self, user_id: int) -> None:
        self.user_id = user_id

    def get(self, key: str) -> str | None:
        if key != PREFERRED_CURRENCY_KEY:
            return None
        with engine.begin() as conn:
            return conn.execute(
                select(users.c.preferred_currency).where(users.c.id == self.user_id)
            ).scalar_one_or_none()

    def set(self, key: str, value: str) -> None:
        if key != PREFERRED_CURRENCY_KEY:
            raise KeyError(key)
        with engine.begin() as conn:
            conn.execute(
                update(users).where(users.c.id == self.user_id).values(preferred_currency=value)
            )


def user_currency_store(user_id: int) -> CurrencyStore:
    return CurrencyStore(UserPreferenceStorage(user_id), default_currency=SETTINGS.default_currency)


def build_currency_store(user_id: int) -> CurrencyStore:
    store = user_currency_store(user_id)
    rates = RATE_SERVICE.rate_table(BASE_CURRENCY)
    if rates is not None:
        store.apply_rates(rates)
    return store


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


def category_in_use(conn, user_id: int, name: str) -> bool:
    txn_match = conn.execute(
        select(transactions.c.id)
        .where(transactions.c.user_id == user_id, transactions.c.category == name)
        .limit(1)
    ).first()
    if txn_match:
        return True
    rule_match = conn.execute(
        select(budget_rules.c.id)
        .where(budget_rules.c.user_id == user_id, budget_rules.c.category == name)
        .limit(1)
    ).first()
    return bool(rule_match)


def account_exists(conn, user_id: int, account_id: int) -> bool:
    return bool(
        conn.execute(
            select(accounts.c.id).where(accounts.c.id == account_id, accounts.c.user_id == user_id)
        ).first()
    )


def get_period_range(period: str, today: date) -> tuple[date, date]:
    normalized = period.strip().lower()
    if normalized == "monthly":
        return today.replace(day=1), today
    raise ValueError("Unsupported period. Use 'monthly'.")


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
            row = conn.execute(stmt).mappings().first()
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
        row = conn.execute(select(users).where(users.c.email == email)).mappings().first()

    if not row or not verify_password(payload.password, row["hashed_password"]):
        raise HTTPException(status_code=401, detail="Invalid credentials.")
    return UserResponse(id=row["id"], email=row["email"], created_at=row["created_at"])


@app.get("/users/me/settings", response_model=UserSettingsResponse)
def get_user_settings(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> UserSettingsResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        row = conn.execute(select(users).where(users.c.id == user_id)).mappings().first()
    store = user_currency_store(user_id)
    return UserSettingsResponse(
        id=row["id"],
        email=row["email"],
        preferred_currency=store.preferred_currency,
        supported_currencies=list(SUPPORTED_CURRENCIES),
    )


@app.put("/users/me/settings", response_model=UserSettingsResponse)
def update_user_settings(
    payload: UserSettingsPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> UserSettingsResponse:
    user_id = get_user_id(x_user_id)
    if payload.preferred_currency is None:
        raise HTTPException(status_code=400, detail="Preferred currency required.")
    if not is_supported_currency(payload.preferred_currency):
        raise HTTPException(status_code=400, detail="Unsupported display currency.")

    storage = UserPreferenceStorage(user_id)
    store = CurrencyStore(storage, default_currency=SETTINGS.default_currency)
    store.set_preferred_currency(payload.preferred_currency)
    # Unchanged values are not written by the store; pin the default explicitly.
    if storage.get(PREFERRED_CURRENCY_KEY) is None:
        storage.set(PREFERRED_CURRENCY_KEY, store.preferred_currency)
    with engine.begin() as conn:
        row = conn.execute(select(users).where(users.c.id == user_id)).mappings().first()
    return UserSettingsResponse(
        id=row["id"],
        email=row["email"],
        preferred_currency=row["preferred_currency"],
        supported_currencies=list(SUPPORTED_CURRENCIES),
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
            .order_by(categories.c.name.asc(), categories.c.id.asc())
        ).mappings().all()
    return [CategoryResponse(**row) for row in rows]


@app.get("/categories/{category_id}", response_model=CategoryResponse)
def get_category(
    category_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> CategoryResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        row = conn.execute(
            select(categories).where(
                categories.c.id == category_id, categories.c.user_id == user_id
            )
        ).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="Category not found.")
    return CategoryResponse(**row)


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
        .values(user_id=user_id, name=payload.name, group=payload.group)
        .returning(*categories.c)
    )
    try:
        with engine.begin() as conn:
            row = conn.execute(stmt).mappings().first()
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Category already exists.") from exc

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create category.")
    return CategoryResponse(**row)


@app.put("/categories/{category_id}", response_model=CategoryResponse)
def update_category(
    category_id: int,
    payload: CategoryPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> CategoryResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = CategoryPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    stmt = (
        update(categories)
        .where(categories.c.id == category_id, categories.c.user_id == user_id)
        .values(name=payload.name, group=payload.group)
        .returning(*categories.c)
    )
    try:
        with engine.begin() as conn:
            row = conn.execute(stmt).mappings().first()
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Category already exists.") from exc

    if not row:
        raise HTTPException(status_code=404, detail="Category not found.")
    return CategoryResponse(**row)


@app.delete("/categories/{category_id}")
def delete_category(
    category_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        row = conn.execute(
            select(categories.c.id, categories.c.name).where(
                categories.c.id == category_id, categories.c.user_id == user_id
            )
        ).mappings().first()
        if not row:
            raise HTTPException(status_code=404, detail="Category not found.")
        if category_in_use(conn, user_id, row["name"]):
            raise HTTPException(status_code=409, detail="Category is in use.")
        conn.execute(
            categories.delete().where(
                categories.c.id == category_id, categories.c.user_id == user_id
            )
        )
    return {"status": "deleted"}


@app.get("/accounts", response_model=list[AccountResponse])
def list_accounts(x_user_id: str | None = Header(None, alias="x-user-id")) -> list[AccountResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        rows = conn.execute(
            select(accounts)
            .where(accounts.c.user_id == user_id)
            .order_by(accounts.c.created_at.desc(), accounts.c.id.desc())
        ).mappings().all()
    return [AccountResponse(**row) for row in rows]


@app.get("/accounts/{account_id}", response_model=AccountResponse)
def get_account(
    account_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> AccountResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        row = conn.execute(
            select(accounts).where(accounts.c.id == account_id, accounts.c.user_id == user_id)
        ).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="Account not found.")
    return AccountResponse(**row)


@app.post("/accounts", response_model=AccountResponse)
def create_account(
    payload: AccountPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> AccountResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = AccountPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    stmt = (
        insert(accounts)
        .values(
            user_id=user_id,
            name=payload.name,
            type=payload.type,
            institution=payload.institution,
        )
        .returning(*accounts.c)
    )
    with engine.begin() as conn:
        row = conn.execute(stmt).mappings().first()

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create account.")
    return AccountResponse(**row)


@app.put("/accounts/{account_id}", response_model=AccountResponse)
def update_account(
    account_id: int, payload: AccountPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> AccountResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = AccountPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    stmt = (
        update(accounts)
        .where(accounts.c.id == account_id, accounts.c.user_id == user_id)
        .values(name=payload.name, type=payload.type, institution=payload.institution)
        .returning(*accounts.c)
    )
    with engine.begin() as conn:
        row = conn.execute(stmt).mappings().first()

    if not row:
        raise HTTPException(status_code=404, detail="Account not found.")
    return AccountResponse(**row)


@app.delete("/accounts/{account_id}")
def delete_account(account_id: int, x_user_id: str | None = Header(None, alias="x-user-id")) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        in_use = conn.execute(
            select(transactions.c.id)
            .where(transactions.c.account_id == account_id, transactions.c.user_id == user_id)
            .limit(1)
        ).first()
        if in_use:
            raise HTTPException(status_code=409, detail="Account has transactions.")
        result = conn.execute(
            accounts.delete().where(accounts.c.id == account_id, accounts.c.user_id == user_id)
        )
        if result.rowcount == 0:
            raise HTTPException(status_code=404, detail="Account not found.")
    return {"status": "deleted"}


@app.get("/transactions", response_model=list[TransactionResponse])
def list_transactions(
    account_id: int | None = None,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[TransactionResponse]:
    user_id = get_user_id(x_user_id)
    conditions = [transactions.c.user_id == user_id]
    if account_id is not None:
        conditions.append(transactions.c.account_id == account_id)
    with engine.begin() as conn:
        rows = conn.execute(
            select(transactions)
            .where(*conditions)
            .order_by(transactions.c.date.desc(), transactions.c.id.desc())
        ).mappings().all()
    return [TransactionResponse(**row) for row in rows]


@app.get("/transactions/{transaction_id}", response_model=TransactionResponse)
def get_transaction(
    transaction_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> TransactionResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        row = conn.execute(
            select(transactions).where(
                transactions.c.id == transaction_id, transactions.c.user_id == user_id
            )
        ).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="Transaction not found.")
    return TransactionResponse(**row)


@app.post("/transactions", response_model=TransactionResponse)
def create_transaction(
    payload: TransactionPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> TransactionResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = TransactionPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    currency = payload.currency or user_currency_store(user_id).preferred_currency
    with engine.begin() as conn:
        if not account_exists(conn, user_id, payload.account_id):
            raise HTTPException(status_code=404, detail="Account not found.")
        row = conn.execute(
            insert(transactions)
            .values(
                user_id=user_id,
                account_id=payload.account_id,
                amount=payload.amount,
                currency=currency,
                type=payload.type,
                category=payload.category,
                date=payload.date,
                notes=payload.notes,
            )
            .returning(*transactions.c)
        ).mappings().first()

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create transaction.")
    return TransactionResponse(**row)


@app.put("/transactions/{transaction_id}", response_model=TransactionResponse)
def update_transaction(
    transaction_id: int,
    payload: TransactionPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> TransactionResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = TransactionPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        if not account_exists(conn, user_id, payload.account_id):
            raise HTTPException(status_code=404, detail="Account not found.")
        values = {
            "account_id": payload.account_id,
            "amount": payload.amount,
            "type": payload.type,
            "category": payload.category,
            "date": payload.date,
            "notes": payload.notes,
        }
        # Without an explicit currency the stored one is kept.
        if payload.currency:
            values["currency"] = payload.currency
        row = conn.execute(
            update(transactions)
            .where(transactions.c.id == transaction_id, transactions.c.user_id == user_id)
            .values(**values)
            .returning(*transactions.c)
        ).mappings().first()

    if not row:
        raise HTTPException(status_code=404, detail="Transaction not found.")
    return TransactionResponse(**row)


@app.delete("/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    stmt = transactions.delete().where(transactions.c.id == transaction_id, transactions.c.user_id == user_id)
    with engine.begin() as conn:
        result = conn.execute(stmt)
        if result.rowcount == 0:
            raise HTTPException(status_code=404, detail="Transaction not found.")
    return {"status": "deleted"}


@app.get("/budget/rules", response_model=list[BudgetRuleResponse])
def list_budget_rules(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[BudgetRuleResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        rows = conn.execute(
            select(budget_rules)
            .where(budget_rules.c.user_id == user_id)
            .order_by(budget_rules.c.created_at.desc(), budget_rules.c.id.desc())
        ).mappings().all()
    return [BudgetRuleResponse(**row) for row in rows]


@app.post("/budget/rules", response_model=BudgetRuleResponse)
def create_budget_rule(
    payload: BudgetRulePayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> BudgetRuleResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = BudgetRulePayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        if payload.account_id is not None and not account_exists(conn, user_id, payload.account_id):
            raise HTTPException(status_code=404, detail="Account not found.")
        row = conn.execute(
            insert(budget_rules)
            .values(
                user_id=user_id,
                rule_type=payload.rule_type,
                amount=payload.amount,
                category=payload.category,
                account_id=payload.account_id,
            )
            .returning(*budget_rules.c)
        ).mappings().first()

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create budget rule.")
    return BudgetRuleResponse(**row)


@app.put("/budget/rules/{rule_id}", response_model=BudgetRuleResponse)
def update_budget_rule(
    rule_id: int,
    payload: BudgetRulePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> BudgetRuleResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = BudgetRulePayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        if payload.account_id is not None and not account_exists(conn, user_id, payload.account_id):
            raise HTTPException(status_code=404, detail="Account not found.")
        row = conn.execute(
            update(budget_rules)
            .where(budget_rules.c.id == rule_id, budget_rules.c.user_id == user_id)
            .values(
                rule_type=payload.rule_type,
                amount=payload.amount,
                category=payload.category,
                account_id=payload.account_id,
            )
            .returning(*budget_rules.c)
        ).mappings().first()

    if not row:
        raise HTTPException(status_code=404, detail="Budget rule not found.")
    return BudgetRuleResponse(**row)


@app.delete("/budget/rules/{rule_id}")
def delete_budget_rule(
    rule_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    stmt = budget_rules.delete().where(
        budget_rules.c.id == rule_id, budget_rules.c.user_id == user_id
    )
    with engine.begin() as conn:
        result = conn.execute(stmt)
        if result.rowcount == 0:
            raise HTTPException(status_code=404, detail="Budget rule not found.")
    return {"status": "deleted"}


@app.get("/budget/evaluate", response_model=list[BudgetEvaluationResponse])
def evaluate_budget_rules(
    period: str = Query(...),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[BudgetEvaluationResponse]:
    user_id = get_user_id(x_user_id)
    try:
        start_date, end_date = get_period_range(period, date.today())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    store = build_currency_store(user_id)
    with engine.begin() as conn:
        rule_rows = conn.execute(
            select(budget_rules).where(budget_rules.c.user_id == user_id)
        ).mappings().all()
        txn_rows = conn.execute(
            select(transactions).where(
                transactions.c.user_id == user_id,
                transactions.c.date >= start_date,
                transactions.c.date <= end_date,
            )
        ).mappings().all()

    txn_items = [
        Transaction(
            amount=row["amount"],
            type=row["type"],
            date=row["date"],
            currency=row["currency"],
            category=row["category"],
            account_id=row["account_id"],
        )
        for row in txn_rows
    ]

    evaluations: list[BudgetEvaluationResponse] = []
    for row in rule_rows:
        rule = BudgetRule(
            rule_type=row["rule_type"],
            amount=row["amount"],
            category=row["category"],
            account_id=row["account_id"],
        )
        try:
            result = evaluate_budget(
                txn_items,
                rule,
                start_date,
                end_date,
                currency=store.preferred_currency,
                rates=store.rates,
            )
        except ValueError as exc:
            raise HTTPException(
                status_code=400,
                detail=f"Invalid budget rule {row['id']}: {exc}",
            ) from exc
        evaluations.append(
            BudgetEvaluationResponse(
                rule_id=row["id"],
                rule_type=row["rule_type"],
                amount=row["amount"],
                category=row["category"],
                account_id=row["account_id"],
                period=period,
                start_date=start_date,
                end_date=end_date,
                current_value=result.current_value,
                remaining=result.remaining,
                status=result.status,
                currency=store.preferred_currency,
                source_currencies=result.source_currencies,
                unconverted_currencies=result.unconverted_currencies,
            )
        )
    return evaluations


@app.get("/exchange-rates/currencies", response_model=SupportedCurrenciesResponse)
def get_supported_currencies(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> SupportedCurrenciesResponse:
    get_user_id(x_user_id)
    return SupportedCurrenciesResponse(currencies=RATE_SERVICE.get_supported_currencies())


@app.get("/exchange-rates/rate", response_model=ExchangeRateResponse)
def get_exchange_rate(
    from_currency: str = Query(..., alias="from"),
    to_currency: str = Query(..., alias="to"),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> ExchangeRateResponse:
    get_user_id(x_user_id)
    try:
        source = normalize_currency(from_currency)
        target = normalize_currency(to_currency)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    stored = RATE_SERVICE.get_stored_rate(source, target)
    if stored is None:
        raise HTTPException(
            status_code=404, detail=f"Could not get exchange rate for {source} -> {target}"
        )
    return ExchangeRateResponse(
        from_currency=source,
        to_currency=target,
        rate=stored.rate,
        fetched_at=stored.fetched_at,
    )


@app.get("/exchange-rates/convert", response_model=ConversionResponse)
def convert_currency(
    amount: str = Query(...),
    from_currency: str = Query(..., alias="from"),
    to_currency: str = Query(..., alias="to"),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> ConversionResponse:
    get_user_id(x_user_id)
    try:
        parsed_amount = parse_amount(amount)
        source = normalize_currency(from_currency)
        target = normalize_currency(to_currency)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    rate = RATE_SERVICE.get_rate(source, target)
    if rate is None:
        raise HTTPException(status_code=404, detail=f"Could not convert {source} to {target}")
    return ConversionResponse(
        original_amount=parsed_amount,
        original_currency=source,
        converted_amount=parsed_amount * rate,
        target_currency=target,
        rate=rate,
    )


@app.get("/exchange-rates/all", response_model=AllRatesResponse)
def get_all_exchange_rates(
    base: str = Query(BASE_CURRENCY),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> AllRatesResponse:
    get_user_id(x_user_id)
    try:
        base_currency = normalize_currency(base)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    stored = RATE_SERVICE.get_all_rates_for_base(base_currency)
    return AllRatesResponse(
        base_currency=base_currency,
        rates=[
            RateEntry(
                currency=item.target_currency,
                rate=item.rate,
                source=item.source,
                fetched_at=item.fetched_at,
            )
            for item in stored
        ],
    )


@app.get("/exchange-rates/history", response_model=RateHistoryResponse)
def get_exchange_rate_history(
    from_currency: str = Query(..., alias="from"),
    to_currency: str = Query(..., alias="to"),
    days: int = Query(30),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> RateHistoryResponse:
    get_user_id(x_user_id)
    try:
        source = normalize_currency(from_currency)
        target = normalize_currency(to_currency)
        history = RATE_SERVICE.get_rate_history(source, target, days)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return RateHistoryResponse(
        from_currency=source,
        to_currency=target,
        days=days,
        history=[RateHistoryEntry(date=point.date, rate=point.rate) for point in history],
    )


@app.post("/exchange-rates/refresh", response_model=RefreshResponse)
def refresh_exchange_rates(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> RefreshResponse:
    get_user_id(x_user_id)
    refreshed = RATE_SERVICE.refresh_all_rates()
    removed = RATE_SERVICE.cleanup_old_rates()
    return RefreshResponse(refreshed=refreshed, removed=removed)


@app.get("/display/amount", response_model=AmountDisplayResponse)
def display_amount(
    amount: str = Query(...),
    currency: str = Query(...),
    show_original: bool = Query(True),
    prefix: str = Query(""),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> AmountDisplayResponse:
    user_id = get_user_id(x_user_id)
    try:
        component = ConvertedAmount(
            amount=parse_amount(amount),
            currency=normalize_currency(currency),
            show_original=show_original,
            prefix=prefix,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    store = build_currency_store(user_id)
    display = component.resolve(store)
    return AmountDisplayResponse(
        text=display.text,
        value=display.value,
        currency=display.currency,
        original_currency=display.original_currency,
        was_converted=display.was_converted,
        title=display.title,
        html=component.render(store),
    )

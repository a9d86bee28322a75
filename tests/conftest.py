"""Pytest bootstrap configuration.

Environment variables are set before any application module is imported so
settings pick them up. Service tests run against the in-memory repositories
below; they follow the same conditional-update contract as the SQLAlchemy
implementations (a transition only succeeds from the expected state).
"""
import os
import tempfile

_TEST_DB_DIR = tempfile.mkdtemp(prefix="payment-reconciliation-")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DEBUG", "false")
os.environ.setdefault("DATABASE__URL", f"sqlite+aiosqlite:///{_TEST_DB_DIR}/test.db")

import asyncio  # noqa: E402
import copy  # noqa: E402
from datetime import datetime, timedelta, timezone  # noqa: E402
from decimal import Decimal  # noqa: E402
from typing import Optional  # noqa: E402

import pytest  # noqa: E402

from application.dtos.payments import (  # noqa: E402
    CallbackResult,
    CallbackStatus,
    RefundResult,
    WebhookValidation,
)
from application.services.background import DetachedTaskRunner  # noqa: E402
from domain.common.unit_of_work import AbstractUnitOfWork  # noqa: E402
from domain.order.entity import Order, OrderFinancialStatus  # noqa: E402
from domain.order.repository import OrderRepository  # noqa: E402
from domain.payment.entity import (  # noqa: E402
    CartLineItem,
    CustomerContact,
    PaymentProviderConfig,
    PendingPayment,
    PendingPaymentStatus,
    TransactionStatus,
)
from domain.payment.repository import (  # noqa: E402
    PaymentProviderConfigRepository,
    PaymentTransactionRepository,
    PendingPaymentRepository,
)
from domain.payment.service import TransactionAlreadyRecordedError  # noqa: E402
from domain.store.entity import Store  # noqa: E402
from domain.store.repository import StoreRepository  # noqa: E402
from infrastructure.external.payments import canonical_provider  # noqa: E402


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


# ============================================================================
# In-memory persistence
# ============================================================================


class MemoryDatabase:
    """Shared state for all Units of Work of one test."""

    def __init__(self) -> None:
        self.stores: dict[int, Store] = {}
        self.orders: dict[int, Order] = {}
        self.pending: dict[str, PendingPayment] = {}
        self.transactions: dict[int, object] = {}
        self.configs: dict[int, PaymentProviderConfig] = {}
        self._seq = 0

    def next_id(self) -> int:
        self._seq += 1
        return self._seq


async def _yield() -> None:
    # let concurrent tasks interleave between repository calls
    await asyncio.sleep(0)


class MemoryStoreRepository(StoreRepository):
    def __init__(self, db: MemoryDatabase):
        self.db = db

    async def get_by_slug(self, slug):
        await _yield()
        for store in self.db.stores.values():
            if store.slug == slug:
                return copy.deepcopy(store)
        return None

    async def get_by_id(self, store_id):
        await _yield()
        store = self.db.stores.get(store_id)
        return copy.deepcopy(store) if store else None

    async def create(self, store):
        store = copy.deepcopy(store)
        store.id = self.db.next_id()
        self.db.stores[store.id] = store
        return copy.deepcopy(store)


class MemoryOrderRepository(OrderRepository):
    def __init__(self, db: MemoryDatabase):
        self.db = db

    async def get_by_id(self, store_id, order_id):
        await _yield()
        order = self.db.orders.get(order_id)
        if order is None or order.store_id != store_id:
            return None
        return copy.deepcopy(order)

    async def create(self, order):
        order = copy.deepcopy(order)
        order.id = self.db.next_id()
        self.db.orders[order.id] = order
        return copy.deepcopy(order)

    async def transition_financial_status(self, order_id, *, expected, new_status):
        await _yield()
        order = self.db.orders.get(order_id)
        if order is None or order.financial_status not in set(expected):
            return False
        order.financial_status = OrderFinancialStatus(new_status)
        return True


class MemoryPendingPaymentRepository(PendingPaymentRepository):
    def __init__(self, db: MemoryDatabase):
        self.db = db

    def _pending(self, payment_id) -> Optional[PendingPayment]:
        payment = self.db.pending.get(payment_id)
        if payment is None or payment.status != PendingPaymentStatus.PENDING:
            return None
        return payment

    async def create(self, payment):
        self.db.pending[payment.id] = copy.deepcopy(payment)
        return copy.deepcopy(payment)

    async def get_by_id(self, payment_id):
        await _yield()
        payment = self.db.pending.get(payment_id)
        return copy.deepcopy(payment) if payment else None

    async def get_by_correlation_id(self, store_id, correlation_id):
        await _yield()
        for payment in self.db.pending.values():
            if payment.store_id == store_id and payment.correlation_id == correlation_id:
                return copy.deepcopy(payment)
        return None

    async def list_recent(self, store_id, limit=100):
        await _yield()
        rows = [p for p in self.db.pending.values() if p.store_id == store_id]
        rows.sort(key=lambda p: p.created_at, reverse=True)
        return [copy.deepcopy(p) for p in rows[:limit]]

    async def list_confirmed_unclaimed(self, store_id, limit=100):
        rows = [
            p for p in self.db.pending.values()
            if p.store_id == store_id and p.status == PendingPaymentStatus.CONFIRMED and p.consumed_at is None
        ]
        return [copy.deepcopy(p) for p in rows[:limit]]

    async def set_correlation_id(self, payment_id, correlation_id):
        payment = self._pending(payment_id)
        if payment is None:
            return False
        payment.correlation_id = correlation_id
        return True

    async def confirm(self, payment_id, payment_details, confirmed_at, *, not_expired_at=None):
        await _yield()
        payment = self._pending(payment_id)
        if payment is None:
            return False
        if not_expired_at is not None and payment.expires_at is not None and payment.expires_at <= not_expired_at:
            return False
        payment.status = PendingPaymentStatus.CONFIRMED
        payment.payment_details = dict(payment_details)
        payment.confirmed_at = confirmed_at
        return True

    async def mark_failed(self, payment_id, reason=None):
        payment = self._pending(payment_id)
        if payment is None:
            return False
        payment.status = PendingPaymentStatus.FAILED
        payment.failure_reason = reason
        return True

    async def mark_expired(self, payment_id):
        payment = self._pending(payment_id)
        if payment is None:
            return False
        payment.status = PendingPaymentStatus.EXPIRED
        return True

    async def merge_payment_details(self, payment_id, details):
        payment = self.db.pending.get(payment_id)
        if payment is not None:
            payment.payment_details.update({k: v for k, v in details.items() if v not in (None, "")})

    async def claim(self, payment_id, claimed_at):
        await _yield()
        payment = self.db.pending.get(payment_id)
        if payment is None or payment.status != PendingPaymentStatus.CONFIRMED or payment.consumed_at:
            return False
        payment.consumed_at = claimed_at
        return True

    async def expire_overdue(self, now, limit=500):
        overdue = [
            p for p in self.db.pending.values()
            if p.status == PendingPaymentStatus.PENDING and p.expires_at is not None and p.expires_at <= now
        ][:limit]
        for payment in overdue:
            payment.status = PendingPaymentStatus.EXPIRED
        return len(overdue)


class MemoryTransactionRepository(PaymentTransactionRepository):
    def __init__(self, db: MemoryDatabase):
        self.db = db

    async def create(self, transaction):
        # check and insert without yielding, like a unique index
        if transaction.provider_transaction_id:
            for existing in self.db.transactions.values():
                if (existing.provider, existing.provider_transaction_id) == (
                    transaction.provider, transaction.provider_transaction_id
                ):
                    raise TransactionAlreadyRecordedError(transaction.provider, transaction.provider_transaction_id)
        txn = copy.deepcopy(transaction)
        txn.id = self.db.next_id()
        txn.created_at = txn.created_at or datetime.now(timezone.utc)
        self.db.transactions[txn.id] = txn
        return copy.deepcopy(txn)

    async def get_by_id(self, transaction_id):
        txn = self.db.transactions.get(transaction_id)
        return copy.deepcopy(txn) if txn else None

    async def get_by_provider_transaction_id(self, provider, provider_transaction_id):
        await _yield()
        for txn in self.db.transactions.values():
            if txn.provider == provider and txn.provider_transaction_id == provider_transaction_id:
                return copy.deepcopy(txn)
        return None

    async def get_successful_charge(self, pending_payment_id):
        for txn in sorted(self.db.transactions.values(), key=lambda t: t.id):
            if (
                txn.pending_payment_id == pending_payment_id
                and txn.type.value == "charge"
                and txn.status == TransactionStatus.SUCCESS
            ):
                return copy.deepcopy(txn)
        return None

    async def list_by_pending_payment(self, pending_payment_id):
        return [copy.deepcopy(t) for t in self.db.transactions.values() if t.pending_payment_id == pending_payment_id]

    async def list_refunds(self, parent_transaction_id):
        return [
            copy.deepcopy(t) for t in self.db.transactions.values()
            if t.parent_transaction_id == parent_transaction_id and t.type.value == "refund"
        ]

    async def finalize(self, transaction_id, status, *, processed_at, approval_number=None, card_brand=None,
                       card_last_four=None, provider_response=None, error_code=None, error_message=None):
        await _yield()
        txn = self.db.transactions.get(transaction_id)
        if txn is None or txn.status != TransactionStatus.PENDING:
            return False
        txn.status = TransactionStatus(status)
        txn.processed_at = processed_at
        txn.error_code = error_code
        txn.error_message = error_message
        txn.provider_approval_num = approval_number or txn.provider_approval_num
        txn.card_brand = card_brand or txn.card_brand
        txn.card_last_four = card_last_four or txn.card_last_four
        if provider_response is not None:
            txn.provider_response = provider_response
        return True

    async def enrich(self, transaction_id, *, approval_number=None, card_brand=None, card_last_four=None,
                     provider_response=None):
        txn = self.db.transactions.get(transaction_id)
        if txn is None:
            return False
        changed = False
        for attr, value in (
            ("provider_approval_num", approval_number),
            ("card_brand", card_brand),
            ("card_last_four", card_last_four),
        ):
            if value and not getattr(txn, attr):
                setattr(txn, attr, value)
                changed = True
        if provider_response and not txn.provider_response:
            txn.provider_response = provider_response
            changed = True
        return changed

    async def annotate_error(self, transaction_id, error_code, error_message):
        txn = self.db.transactions.get(transaction_id)
        if txn is not None and txn.status == TransactionStatus.PENDING:
            txn.error_code = error_code
            txn.error_message = error_message


class MemoryProviderConfigRepository(PaymentProviderConfigRepository):
    def __init__(self, db: MemoryDatabase):
        self.db = db

    async def create(self, config):
        config = copy.deepcopy(config)
        config.id = self.db.next_id()
        self.db.configs[config.id] = config
        return copy.deepcopy(config)

    async def update(self, config):
        stored = self.db.configs[config.id]
        counters = (stored.total_transactions, stored.total_volume)
        updated = copy.deepcopy(config)
        updated.total_transactions, updated.total_volume = counters
        self.db.configs[config.id] = updated
        return copy.deepcopy(updated)

    async def delete(self, config_id):
        return self.db.configs.pop(config_id, None) is not None

    async def get_by_store_and_provider(self, store_id, provider):
        for config in self.db.configs.values():
            if config.store_id == store_id and config.provider == provider:
                return copy.deepcopy(config)
        return None

    async def get_active(self, store_id, provider):
        await _yield()
        config = await self.get_by_store_and_provider(store_id, provider)
        return config if config and config.is_active else None

    async def list_by_store(self, store_id):
        rows = [c for c in self.db.configs.values() if c.store_id == store_id]
        rows.sort(key=lambda c: (not c.is_default, c.provider))
        return [copy.deepcopy(c) for c in rows]

    async def count_active(self, store_id):
        return sum(1 for c in self.db.configs.values() if c.store_id == store_id and c.is_active)

    async def clear_default(self, store_id):
        for config in self.db.configs.values():
            if config.store_id == store_id:
                config.is_default = False

    async def increment_counters(self, config_id, amount):
        config = self.db.configs[config_id]
        config.total_transactions += 1
        config.total_volume += Decimal(amount)


class MemoryUnitOfWork(AbstractUnitOfWork):
    """Writes land immediately; commit/rollback only track calls."""

    def __init__(self, db: MemoryDatabase, *, readonly: bool = False) -> None:
        super().__init__(readonly=readonly)
        self.store_repository = MemoryStoreRepository(db)
        self.order_repository = MemoryOrderRepository(db)
        self.pending_payment_repository = MemoryPendingPaymentRepository(db)
        self.transaction_repository = MemoryTransactionRepository(db)
        self.provider_config_repository = MemoryProviderConfigRepository(db)

    async def commit(self) -> None:
        self._committed = True

    async def rollback(self) -> None:
        self._committed = False


# ============================================================================
# Gateway doubles
# ============================================================================


class FakeGateway:
    """Scripted gateway: tests set the parse/lookup/refund answers."""

    def __init__(self, provider: str = "payplus", *, verify_via_lookup: bool = False) -> None:
        self.provider = provider
        self.verify_via_lookup = verify_via_lookup
        self.valid = True
        self.callback: Optional[CallbackResult] = None
        self.redirect: Optional[CallbackResult] = None
        self.lookup: Optional[CallbackResult] = None
        self.refund_result = RefundResult(success=True, refund_id="rf-1")
        self.lookup_calls: list[dict] = []
        self.refund_calls: list = []
        self.config: Optional[PaymentProviderConfig] = None
        self.closed = 0

    def configure(self, config):
        self.config = config

    def validate_webhook(self, raw_body, headers):
        if self.valid:
            return WebhookValidation(is_valid=True)
        return WebhookValidation(is_valid=False, error="Invalid hash signature")

    def parse_callback(self, raw_body):
        return self.callback or CallbackResult(provider=self.provider)

    def parse_redirect(self, params):
        return self.redirect or CallbackResult(provider=self.provider)

    async def get_transaction_status(self, *, provider_transaction_id=None, correlation_id=None):
        self.lookup_calls.append(
            {"provider_transaction_id": provider_transaction_id, "correlation_id": correlation_id}
        )
        return self.lookup

    async def refund(self, req):
        self.refund_calls.append(req)
        return self.refund_result

    async def aclose(self):
        self.closed += 1


class FakeGatewayFactory:
    def __init__(self, gateway: FakeGateway) -> None:
        self.gateway = gateway

    def canonical(self, provider):
        return canonical_provider(provider)

    def create(self, provider, config=None):
        if config is not None:
            self.gateway.configure(config)
        return self.gateway


class RecordingPublisher:
    def __init__(self) -> None:
        self.events: list = []

    async def publish(self, event) -> None:
        self.events.append(event)

    def names(self) -> list[str]:
        return [e.name for e in self.events]


def success_callback(**overrides) -> CallbackResult:
    fields = {
        "provider": "payplus",
        "status": CallbackStatus.SUCCESS,
        "success": True,
        "provider_transaction_id": "tx-1001",
        "correlation_id": "page-req-1",
        "amount": Decimal("150.00"),
        "currency": "ILS",
        "approval_number": "0123456",
        "card_brand": "visa",
        "card_last_four": "4242",
        "raw": {"transaction": {"uid": "tx-1001"}},
    }
    fields.update(overrides)
    return CallbackResult(**fields)


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def db() -> MemoryDatabase:
    return MemoryDatabase()


@pytest.fixture
def uow_factory(db):
    def factory(*, readonly: bool = False) -> MemoryUnitOfWork:
        return MemoryUnitOfWork(db, readonly=readonly)

    return factory


@pytest.fixture
def store(db) -> Store:
    shop = Store(id=db.next_id(), slug="acme", name="Acme Outdoor", currency="ILS")
    db.stores[shop.id] = shop
    return shop


@pytest.fixture
def provider_config(db, store) -> PaymentProviderConfig:
    config = PaymentProviderConfig(
        id=db.next_id(),
        store_id=store.id,
        provider="payplus",
        credentials={"api_key": "key", "secret_key": "secret"},
        is_default=True,
    )
    db.configs[config.id] = config
    return config


@pytest.fixture
def make_pending(db, store):
    """Pending payment of 150.00: items 150, discount 20, shipping 20."""

    def factory(**overrides) -> PendingPayment:
        fields = {
            "store_id": store.id,
            "provider": "payplus",
            "currency": "ILS",
            "items": [
                CartLineItem(product_id="tent-2p", name="Tent", quantity=1, unit_price=Decimal("100.00")),
                CartLineItem(product_id="lamp", name="Lamp", quantity=2, unit_price=Decimal("25.00")),
            ],
            "customer": CustomerContact(name="Dana", email="dana@example.com"),
            "ttl": timedelta(minutes=30),
            "discount_amount": Decimal("20.00"),
            "shipping_cost": Decimal("20.00"),
            "correlation_id": "page-req-1",
            "now": NOW,
        }
        fields.update(overrides)
        payment = PendingPayment.open(**fields)
        db.pending[payment.id] = payment
        return payment

    return factory


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def gateways(gateway) -> FakeGatewayFactory:
    return FakeGatewayFactory(gateway)


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def runner() -> DetachedTaskRunner:
    return DetachedTaskRunner()


@pytest.fixture
def make_callback():
    return success_callback


@pytest.fixture
def now():
    """Moment the make_pending fixture opens its checkouts at."""
    return NOW

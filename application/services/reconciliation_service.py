"""
Reconciliation orchestrator for inbound gateway callbacks (webhooks and
browser redirects).

Each callback moves through received -> authenticated -> matched ->
amount-checked -> applied. Every rejection is a ReconciliationError carrying
its outcome; the caller always acknowledges the gateway unless something
unexpected escapes. Writes happen in short Units of Work:

1. the pending ledger row is inserted and committed on its own, so the
   (provider, provider_transaction_id) unique constraint decides which
   concurrent worker owns the gateway transaction;
2. the ledger transition and the PendingPayment transition share one Unit of
   Work, both as conditional UPDATEs.

Counter increments and event publication run detached after commit, and only
for the worker that won the PendingPayment transition.
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, Mapping, Optional

from application.dtos.payments import CallbackResult, CallbackStatus, ReconciliationResult
from application.ports.event_publisher import PaymentEventPublisher
from application.ports.payment_gateway import PaymentGateway, PaymentGatewayFactory
from application.services.background import DetachedTaskRunner
from application.services.callback_normalizer import CallbackNormalizer
from core.logging_config import get_logger
from core.settings import ReconciliationSettings
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import (
    PaymentProviderConfig,
    PaymentTransaction,
    PendingPayment,
    PendingPaymentStatus,
    ReconciliationOutcome,
    TransactionStatus,
    TransactionType,
    _utcnow,
)
from domain.payment.events import LatePaymentReceived, PaymentConfirmed, PaymentEvent, PaymentFailed
from domain.payment.service import (
    AmountMismatchError,
    CallbackAuthenticationError,
    CallbackPayloadError,
    CallbackRoutingError,
    PaymentMatchError,
    PaymentReconciliationPolicy,
    PendingPaymentExpiredError,
    ReconciliationError,
    TransactionAlreadyRecordedError,
    TransactionOwnershipError,
)
from domain.store.entity import Store


logger = get_logger(__name__)

UnitOfWorkFactory = Callable[..., AbstractUnitOfWork]


class ReconciliationService:
    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        gateways: PaymentGatewayFactory,
        *,
        publisher: PaymentEventPublisher,
        runner: Optional[DetachedTaskRunner] = None,
        settings: Optional[ReconciliationSettings] = None,
        is_production: bool = True,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._uow_factory = uow_factory
        self._gateways = gateways
        self._publisher = publisher
        self._runner = runner or DetachedTaskRunner()
        self._settings = settings or ReconciliationSettings()
        self._policy = PaymentReconciliationPolicy(self._settings.amount_tolerance)
        self._is_production = is_production
        self._clock = clock

    # ------------------------------------------------------------------
    # 入口
    # ------------------------------------------------------------------

    async def handle_webhook(
        self,
        provider: str,
        store_slug: Optional[str],
        raw_body: bytes,
        headers: Mapping[str, str],
    ) -> ReconciliationResult:
        """处理服务端异步通知"""

        async def authenticate(gateway: PaymentGateway) -> CallbackResult:
            validation = gateway.validate_webhook(raw_body, headers)
            if not validation.is_valid:
                self._authentication_failed(gateway.provider, validation.error or "Invalid webhook")
            result = await CallbackNormalizer(gateway).normalize(gateway.parse_callback(raw_body))
            if gateway.verify_via_lookup and result.verified is False:
                self._authentication_failed(gateway.provider, "Transaction status lookup failed")
            return result

        return await self._reconcile(provider, store_slug, "webhook", authenticate)

    async def handle_redirect(
        self,
        provider: str,
        store_slug: Optional[str],
        params: Mapping[str, str],
    ) -> ReconciliationResult:
        """处理浏览器跳转回调：跳转不带签名，真实性依赖状态查询"""

        async def authenticate(gateway: PaymentGateway) -> CallbackResult:
            parsed = gateway.parse_redirect(params)
            result = await CallbackNormalizer(gateway).normalize(parsed, require_lookup=True)
            if result.verified is not True:
                self._authentication_failed(gateway.provider, "Redirect could not be verified")
            return result

        return await self._reconcile(provider, store_slug, "redirect", authenticate)

    async def _reconcile(
        self,
        provider: str,
        store_slug: Optional[str],
        channel: str,
        authenticate: Callable[[PaymentGateway], Awaitable[CallbackResult]],
    ) -> ReconciliationResult:
        try:
            store, config = await self._resolve(provider, store_slug)
            gateway = self._gateways.create(config.provider, config)
            try:
                result = await authenticate(gateway)
            finally:
                await gateway.aclose()
            outcome = await self._apply_callback(store, config, result)
        except ReconciliationError as exc:
            logger.warning(
                "callback_rejected",
                channel=channel,
                provider=provider,
                store=store_slug,
                outcome=exc.outcome.value,
                error_type=exc.error_type,
                message=exc.message,
                details=exc.details,
            )
            return ReconciliationResult(
                outcome=exc.outcome,
                provider=provider,
                pending_payment_id=(exc.details or {}).get("pending_payment_id"),
                message=exc.message,
            )
        logger.info(
            "callback_reconciled",
            channel=channel,
            provider=outcome.provider,
            store=store_slug,
            outcome=outcome.outcome.value,
            pending_payment_id=outcome.pending_payment_id,
            transaction_id=outcome.transaction_id,
        )
        return outcome

    # ------------------------------------------------------------------
    # 步骤
    # ------------------------------------------------------------------

    async def _resolve(self, provider: str, store_slug: Optional[str]) -> tuple[Store, PaymentProviderConfig]:
        canonical = self._gateways.canonical(provider)
        if not store_slug:
            raise CallbackRoutingError("Missing store parameter", provider=canonical)
        async with self._uow_factory(readonly=True) as uow:
            store = await uow.store_repository.get_by_slug(store_slug)
            if store is None or not store.is_active:
                raise CallbackRoutingError("Unknown or inactive store", store=store_slug, provider=canonical)
            config = await uow.provider_config_repository.get_active(store.id, canonical)
        if config is None:
            raise CallbackRoutingError("Provider is not configured for this store", store=store_slug, provider=canonical)
        return store, config

    def _authentication_failed(self, provider: str, reason: str) -> None:
        if self._is_production:
            raise CallbackAuthenticationError(provider, reason)
        logger.warning("callback_authentication_bypassed", provider=provider, reason=reason)

    async def _match(self, store: Store, result: CallbackResult) -> PendingPayment:
        async with self._uow_factory(readonly=True) as uow:
            repo = uow.pending_payment_repository
            pending = None
            if result.correlation_id:
                pending = await repo.get_by_correlation_id(store.id, result.correlation_id)
            if pending is None and result.order_reference:
                candidates = await repo.list_recent(store.id, limit=self._settings.match_scan_limit)
                pending = self._policy.match_by_order_reference(candidates, result.order_reference)
        if pending is None:
            raise PaymentMatchError(correlation_id=result.correlation_id, order_reference=result.order_reference)
        return pending

    async def _record_charge(
        self,
        store: Store,
        config: PaymentProviderConfig,
        pending: PendingPayment,
        result: CallbackResult,
    ) -> PaymentTransaction:
        """幂等闸门：同一网关流水号只会有一条流水"""
        provider = config.provider
        async with self._uow_factory(readonly=True) as uow:
            existing = await uow.transaction_repository.get_by_provider_transaction_id(
                provider, result.provider_transaction_id
            )
        if existing is not None:
            return self._ensure_owner(existing, store, pending)

        candidate = PaymentTransaction(
            id=None,
            store_id=store.id,
            provider=provider,
            type=TransactionType.CHARGE,
            status=TransactionStatus.PENDING,
            amount=result.amount if result.amount is not None else pending.expected_total,
            currency=result.currency or pending.currency,
            provider_transaction_id=result.provider_transaction_id,
            pending_payment_id=pending.id,
            provider_config_id=config.id,
            provider_approval_num=result.approval_number,
            card_brand=result.card_brand,
            card_last_four=result.card_last_four,
            provider_response=result.raw,
        )
        try:
            async with self._uow_factory() as uow:
                return await uow.transaction_repository.create(candidate)
        except TransactionAlreadyRecordedError:
            async with self._uow_factory(readonly=True) as uow:
                winner = await uow.transaction_repository.get_by_provider_transaction_id(
                    provider, result.provider_transaction_id
                )
            if winner is None:
                raise
            logger.info(
                "payment_transaction_race_lost",
                provider=provider,
                provider_transaction_id=result.provider_transaction_id,
                transaction_id=winner.id,
            )
            return self._ensure_owner(winner, store, pending)

    @staticmethod
    def _ensure_owner(txn: PaymentTransaction, store: Store, pending: PendingPayment) -> PaymentTransaction:
        """流水号已属于别的结账或店铺时拒绝，不补充、不终结、不确认"""
        if txn.store_id == store.id and txn.pending_payment_id == pending.id:
            return txn
        logger.error(
            "payment_transaction_owner_mismatch",
            provider=txn.provider,
            provider_transaction_id=txn.provider_transaction_id,
            transaction_id=txn.id,
            transaction_store_id=txn.store_id,
            transaction_pending_payment_id=txn.pending_payment_id,
            store_id=store.id,
            pending_payment_id=pending.id,
        )
        raise TransactionOwnershipError(
            provider=txn.provider,
            provider_transaction_id=txn.provider_transaction_id,
            pending_payment_id=pending.id,
        )

    async def _apply_callback(
        self,
        store: Store,
        config: PaymentProviderConfig,
        result: CallbackResult,
    ) -> ReconciliationResult:
        pending = await self._match(store, result)
        if not result.provider_transaction_id:
            raise CallbackPayloadError("Callback carries no provider transaction id", provider=config.provider)

        txn = await self._record_charge(store, config, pending, result)
        if txn.is_terminal:
            status = await self._enrich(txn, pending, result)
            return self._result(ReconciliationOutcome.ALREADY_PROCESSED, config, pending.id, status, txn.id)
        if result.status in (CallbackStatus.PENDING, CallbackStatus.PROCESSING):
            status = await self._enrich(txn, pending, result)
            return self._result(ReconciliationOutcome.IN_PROGRESS, config, pending.id, status, txn.id)
        if result.success:
            return await self._apply_success(store, config, pending, txn, result)
        return await self._apply_failure(store, config, pending, txn, result)

    async def _enrich(
        self,
        txn: PaymentTransaction,
        pending: PendingPayment,
        result: CallbackResult,
    ) -> str:
        """补充网关字段（审批号、卡信息），不改变任何状态；返回当前 PendingPayment 状态"""
        async with self._uow_factory() as uow:
            await uow.transaction_repository.enrich(
                txn.id,
                approval_number=result.approval_number,
                card_brand=result.card_brand,
                card_last_four=result.card_last_four,
                provider_response=result.raw,
            )
            current = await uow.pending_payment_repository.get_by_id(pending.id) or pending
            if current.status == PendingPaymentStatus.CONFIRMED:
                extra = {
                    "approval_number": result.approval_number,
                    "card_brand": result.card_brand,
                    "card_last_four": result.card_last_four,
                }
                missing = {k: v for k, v in extra.items() if v and not current.payment_details.get(k)}
                if missing:
                    await uow.pending_payment_repository.merge_payment_details(current.id, missing)
        return current.status.value

    async def _apply_success(
        self,
        store: Store,
        config: PaymentProviderConfig,
        pending: PendingPayment,
        txn: PaymentTransaction,
        result: CallbackResult,
    ) -> ReconciliationResult:
        check = self._policy.check_amount(pending, result.amount)
        currency_ok = not result.currency or result.currency == pending.currency
        if not check.matches or not currency_ok:
            if self._is_production:
                async with self._uow_factory() as uow:
                    await uow.transaction_repository.annotate_error(
                        txn.id,
                        "AMOUNT_MISMATCH",
                        f"expected {check.expected} {pending.currency}, "
                        f"claimed {check.claimed} {result.currency or pending.currency}",
                    )
                raise AmountMismatchError(
                    pending_payment_id=pending.id, expected=check.expected, claimed=check.claimed
                )
            logger.warning(
                "payment_amount_mismatch_ignored",
                pending_payment_id=pending.id,
                expected=str(check.expected),
                claimed=None if check.claimed is None else str(check.claimed),
                currency=result.currency,
            )

        now = self._clock()
        accept_late = self._settings.accept_late_confirmations
        late = pending.is_expired(now) and not accept_late
        details = self._policy.build_payment_details(
            provider=config.provider,
            provider_transaction_id=result.provider_transaction_id,
            approval_number=result.approval_number,
            card_brand=result.card_brand,
            card_last_four=result.card_last_four,
            confirmed_at=now.isoformat(),
        )

        async with self._uow_factory() as uow:
            won = await uow.transaction_repository.finalize(
                txn.id,
                TransactionStatus.SUCCESS,
                processed_at=now,
                approval_number=result.approval_number,
                card_brand=result.card_brand,
                card_last_four=result.card_last_four,
                provider_response=result.raw,
            )
            if not won:
                current = await uow.pending_payment_repository.get_by_id(pending.id) or pending
                return self._result(
                    ReconciliationOutcome.ALREADY_PROCESSED, config, pending.id, current.status.value, txn.id
                )
            confirmed = False
            if not late:
                confirmed = await uow.pending_payment_repository.confirm(
                    pending.id,
                    details,
                    now,
                    not_expired_at=None if accept_late else now,
                )
            if not confirmed:
                current = await uow.pending_payment_repository.get_by_id(pending.id) or pending
                if current.status == PendingPaymentStatus.PENDING:
                    # 仍为 pending 却确认失败，只能是已过有效期
                    await uow.pending_payment_repository.mark_expired(pending.id)
                # 以最新状态为准：快照过期但已被其他流水确认的结账不算迟到
                late = current.status in (PendingPaymentStatus.PENDING, PendingPaymentStatus.EXPIRED)

        amount = txn.amount if result.amount is None else result.amount
        currency = result.currency or pending.currency
        if confirmed:
            self._spawn_counters(config.id, amount)
            self._spawn_publish(
                PaymentConfirmed(
                    store_id=store.id,
                    provider=config.provider,
                    pending_payment_id=pending.id,
                    provider_transaction_id=result.provider_transaction_id,
                    amount=str(amount),
                    currency=currency,
                    customer_email=pending.customer.email,
                )
            )
            return self._result(
                ReconciliationOutcome.CONFIRMED, config, pending.id, PendingPaymentStatus.CONFIRMED.value, txn.id
            )

        # 网关已扣款但结账已关闭：流水记为成功，交由人工退款
        logger.error(
            "late_payment_received" if late else "payment_captured_for_closed_checkout",
            store_id=store.id,
            provider=config.provider,
            pending_payment_id=pending.id,
            pending_status=PendingPaymentStatus.EXPIRED.value if late else current.status.value,
            provider_transaction_id=result.provider_transaction_id,
            amount=str(amount),
            currency=currency,
        )
        self._spawn_publish(
            LatePaymentReceived(
                store_id=store.id,
                provider=config.provider,
                pending_payment_id=pending.id,
                provider_transaction_id=result.provider_transaction_id,
                amount=str(amount),
                currency=currency,
            )
        )
        if late:
            raise PendingPaymentExpiredError(pending.id)
        return self._result(
            ReconciliationOutcome.ALREADY_PROCESSED, config, pending.id, current.status.value, txn.id
        )

    async def _apply_failure(
        self,
        store: Store,
        config: PaymentProviderConfig,
        pending: PendingPayment,
        txn: PaymentTransaction,
        result: CallbackResult,
    ) -> ReconciliationResult:
        now = self._clock()
        reason = result.error_message or result.error_code or result.status.value
        async with self._uow_factory() as uow:
            won = await uow.transaction_repository.finalize(
                txn.id,
                TransactionStatus.FAILED,
                processed_at=now,
                approval_number=result.approval_number,
                card_brand=result.card_brand,
                card_last_four=result.card_last_four,
                provider_response=result.raw,
                error_code=result.error_code or result.status.value,
                error_message=result.error_message,
            )
            if not won:
                current = await uow.pending_payment_repository.get_by_id(pending.id) or pending
                return self._result(
                    ReconciliationOutcome.ALREADY_PROCESSED, config, pending.id, current.status.value, txn.id
                )
            failed = await uow.pending_payment_repository.mark_failed(pending.id, reason=reason)
            current = await uow.pending_payment_repository.get_by_id(pending.id) or pending

        if failed:
            self._spawn_publish(
                PaymentFailed(
                    store_id=store.id,
                    provider=config.provider,
                    pending_payment_id=pending.id,
                    provider_transaction_id=result.provider_transaction_id,
                    reason=reason,
                )
            )
        return self._result(ReconciliationOutcome.FAILED, config, pending.id, current.status.value, txn.id,
                            message=reason)

    # ------------------------------------------------------------------
    # 辅助
    # ------------------------------------------------------------------

    @staticmethod
    def _result(
        outcome: ReconciliationOutcome,
        config: PaymentProviderConfig,
        pending_payment_id: Optional[str],
        pending_status: Optional[str],
        transaction_id: Optional[int],
        message: Optional[str] = None,
    ) -> ReconciliationResult:
        return ReconciliationResult(
            outcome=outcome,
            provider=config.provider,
            pending_payment_id=pending_payment_id,
            pending_status=pending_status,
            transaction_id=transaction_id,
            message=message,
        )

    def _spawn_counters(self, config_id: Optional[int], amount: Decimal) -> None:
        if config_id is None:
            return

        async def increment() -> None:
            async with self._uow_factory() as uow:
                await uow.provider_config_repository.increment_counters(config_id, amount)

        self._runner.spawn(f"provider_counters:{config_id}", increment)

    def _spawn_publish(self, event: PaymentEvent) -> None:
        async def publish() -> Any:
            await self._publisher.publish(event)

        self._runner.spawn(f"publish:{event.name}", publish)

"""
Payment Orchestrator
====================
Coordinates push-payment initiation, callback correlation and periodic
reconciliation.

Per-transaction state machine:

    INITIATED -> SUCCESS | FAILED | TIMED_OUT   (all terminal)

Initiation is synchronous only up to gateway acceptance. The confirmation
arrives later as an unrelated `handle_callback` call, correlated purely by
tracking id. Callbacks and the reconciliation sweep race for the same rows
and rely on the same compare-and-set in the TransactionStore, so whichever
observes a transaction first resolves it and every later observer is a no-op.

Retry policy is asymmetric: a lost SUCCESS means money taken with no
entitlement, so SUCCESS callbacks are parked and retried until durable. A lost
FAILED callback is harmless because the sweep times the record out anyway.

Example:
    orchestrator = PaymentOrchestrator(gateway=IntaSendClient())
    txn = await orchestrator.initiate_upgrade("user-1", Tier.HEALTH_CHAMPION)
    # ... payer approves on their phone, gateway calls back ...
    await orchestrator.handle_callback(CallbackPayload(...))
"""

import re
from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog

from subscriptions.audit import AuditEventType, AuditLogEntry, IAuditLog, InMemoryAuditLog
from subscriptions.config import settings
from subscriptions.errors import (
    AlreadyResolved,
    DuplicateTrackingId,
    ExpiredRegistration,
    GatewayError,
    InvalidChannel,
    UnknownTransaction,
    ValidationError,
)
from subscriptions.gateway_client import IPaymentGatewayClient, InMemoryGatewayClient
from subscriptions.ledger import SubscriptionLedger, TierChangeResult
from subscriptions.models import (
    CallbackEvent,
    CallbackOutcome,
    CallbackPayload,
    CallbackResult,
    CallbackStatus,
    PendingRegistration,
    PendingTransaction,
    ReconcileReport,
    RegistrationResult,
    RegistrationState,
    SubscriptionRecord,
    SubscriptionStatus,
    TransactionKind,
    TransactionState,
    utcnow,
)
from subscriptions.retry_queue import ICallbackRetryQueue, InMemoryCallbackRetryQueue
from subscriptions.tiers import FREE_TIER, Tier, get_tier_info, parse_tier, price_for, validate_amount
from subscriptions.transaction_store import InMemoryTransactionStore, ITransactionStore

_EMAIL = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class PaymentOrchestrator:

    def __init__(
        self,
        gateway: Optional[IPaymentGatewayClient] = None,
        store: Optional[ITransactionStore] = None,
        ledger: Optional[SubscriptionLedger] = None,
        audit_log: Optional[IAuditLog] = None,
        retry_queue: Optional[ICallbackRetryQueue] = None,
        currency: str = settings.PAYMENT_CURRENCY,
        transaction_ttl_seconds: int = settings.TRANSACTION_TTL_SECONDS,
        registration_ttl_seconds: int = settings.REGISTRATION_TTL_SECONDS,
        grant_late_success: bool = settings.GRANT_LATE_SUCCESS,
        callback_max_attempts: int = settings.CALLBACK_MAX_ATTEMPTS,
        callback_retry_delay_seconds: int = settings.CALLBACK_RETRY_DELAY_SECONDS,
        settlement_grace_seconds: int = settings.SETTLEMENT_GRACE_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ):
        # Dependency injection with defaults
        self.gateway = gateway or InMemoryGatewayClient()
        self.store = store or InMemoryTransactionStore()
        self.ledger = ledger or SubscriptionLedger()
        self.audit = audit_log or InMemoryAuditLog()
        self.retry_queue = retry_queue or InMemoryCallbackRetryQueue()

        self.currency = currency
        self.transaction_ttl = timedelta(seconds=transaction_ttl_seconds)
        self.registration_ttl_seconds = registration_ttl_seconds
        self.grant_late_success = grant_late_success
        self.callback_max_attempts = callback_max_attempts
        self.callback_retry_delay = callback_retry_delay_seconds
        self.settlement_grace = timedelta(seconds=settlement_grace_seconds)
        self._clock = clock

        self._base_logger = structlog.get_logger().bind(component="payment_orchestrator")

    @property
    def clock(self) -> Callable[[], datetime]:
        return self._clock

    def _get_logger(self, tracking_id: str = None):
        return self._base_logger.bind(tracking_id=tracking_id) if tracking_id else self._base_logger

    async def _emit_audit(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        tracking_id: Optional[str] = None,
        previous_state: dict = None,
        new_state: dict = None,
        metadata: dict = None,
        actor: str = "system",
    ):
        await self.audit.append(AuditLogEntry(
            tracking_id=tracking_id,
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            previous_state=previous_state,
            new_state=new_state,
            metadata=metadata or {},
            actor=actor,
            timestamp=self._clock(),
        ))

    # =========================================================================
    # INITIATION (user-facing: errors raise, nothing is retried)
    # =========================================================================

    async def initiate_upgrade(
        self,
        user_id: str,
        target_tier,
        channel: Optional[str] = None,
    ) -> PendingTransaction:
        """
        Push a payment prompt for an upgrade and record it as INITIATED.

        The target must rank strictly above the user's current tier; an
        expired premium tier counts as free. Downgrades and cancellation go
        through `downgrade_to_free` / `cancel_subscription`.
        """
        tier = parse_tier(target_tier)
        now = self._clock()
        record = await self.ledger.require_record(user_id)

        current = record.tier
        if record.status(now) == SubscriptionStatus.EXPIRED:
            current = FREE_TIER
        if tier.rank <= current.rank:
            raise ValidationError(
                f"{tier.value} does not rank above current tier {current.value}; "
                "use the downgrade or cancellation path instead"
            )

        amount = price_for(tier)
        channel = channel or record.phone
        if not channel:
            raise InvalidChannel("No payer phone number on file; supply one")

        reference = f"{user_id}:{tier.value}"
        txn = await self._push_and_record(
            kind=TransactionKind.UPGRADE,
            user_id=user_id,
            tier=tier,
            amount=amount,
            channel=channel,
            reference=reference,
            narrative=f"Upgrade payment for {get_tier_info(tier).name}",
            expires_at=now + self.transaction_ttl,
            now=now,
        )
        return txn

    async def initiate_registration(
        self,
        email: str,
        phone: str,
        target_tier,
        full_name: Optional[str] = None,
    ) -> RegistrationResult:
        """
        Register-and-pay before any account exists. The pending registration
        lives for the registration TTL; the tier is granted only by
        `complete_registration` after payment is confirmed.
        """
        tier = parse_tier(target_tier)
        if not email or not _EMAIL.match(email):
            raise ValidationError(f"Invalid email address: {email!r}")

        if tier == FREE_TIER:
            return RegistrationResult(requires_payment=False, message="Free account needs no payment")

        amount = price_for(tier)
        now = self._clock()
        registration = PendingRegistration.with_ttl(
            self.registration_ttl_seconds,
            now=now,
            email=email,
            phone=phone,
            full_name=full_name,
            target_tier=tier,
            tracking_id="pending",
        )

        txn = await self._push_and_record(
            kind=TransactionKind.REGISTRATION,
            user_id=None,
            tier=tier,
            amount=amount,
            channel=phone,
            reference=registration.temp_id,
            narrative=f"Registration payment for {get_tier_info(tier).name}",
            expires_at=registration.expires_at,
            now=now,
        )

        registration = registration.model_copy(update={"tracking_id": txn.tracking_id})
        await self.store.create_registration(registration)
        await self._emit_audit(
            event_type=AuditEventType.REGISTRATION_CREATED,
            entity_type="registration",
            entity_id=registration.temp_id,
            tracking_id=txn.tracking_id,
            new_state={"state": registration.state.value, "target_tier": tier.value},
            metadata={"expires_at": registration.expires_at.isoformat()},
            actor="user",
        )
        return RegistrationResult(
            requires_payment=True,
            registration=registration,
            message="Payment initiated. Complete payment on your phone to finish registration.",
        )

    async def _push_and_record(
        self,
        kind: TransactionKind,
        user_id: Optional[str],
        tier: Tier,
        amount: float,
        channel: str,
        reference: str,
        narrative: str,
        expires_at: datetime,
        now: datetime,
    ) -> PendingTransaction:
        log = self._get_logger().bind(kind=kind.value, user_id=user_id, target_tier=tier.value)
        log.info("push_initiated", amount=amount, currency=self.currency)

        try:
            result = await self.gateway.push(channel, amount, self.currency, reference, narrative)
        except GatewayError as e:
            log.error("push_failed", error=str(e), error_type=type(e).__name__)
            raise

        if not result.accepted or not result.tracking_id:
            log.warning("push_rejected", message=result.message)
            raise GatewayError(result.message or "Payment gateway did not accept the push")

        txn = PendingTransaction(
            tracking_id=result.tracking_id,
            kind=kind,
            user_id=user_id,
            target_tier=tier,
            amount=amount,
            currency=self.currency,
            channel=channel,
            reference=reference,
            initiated_at=now,
            expires_at=expires_at,
        )
        try:
            await self.store.create_pending(txn)
        except DuplicateTrackingId:
            log.error("gateway_reused_tracking_id", tracking_id=result.tracking_id)
            raise

        await self._emit_audit(
            event_type=AuditEventType.PAYMENT_INITIATED,
            entity_type="transaction",
            entity_id=txn.tracking_id,
            tracking_id=txn.tracking_id,
            new_state={"state": txn.state.value},
            metadata={"kind": kind.value, "amount": amount, "target_tier": tier.value, "user_id": user_id},
            actor="user",
        )
        log.info("push_accepted", tracking_id=txn.tracking_id, expires_at=expires_at.isoformat())
        return txn

    # =========================================================================
    # CALLBACKS (system-facing: never raise domain errors at the caller)
    # =========================================================================

    async def handle_callback(self, payload: CallbackPayload) -> CallbackResult:
        """
        Correlate a gateway confirmation with its pending transaction.

        Safe under concurrent and repeated delivery. A SUCCESS that cannot be
        written is parked in the retry queue; only a failure to park it
        propagates, so the webhook answers 5xx and the gateway redelivers.
        """
        log = self._get_logger(payload.tracking_id)
        log.info("callback_received", status=payload.status.value, amount=payload.amount)

        try:
            return await self._process_callback(payload)
        except Exception as e:
            if payload.status == CallbackStatus.SUCCESS:
                log.error("callback_processing_failed", error=str(e), exc_info=True)
                return await self._defer_callback(payload, e)
            log.warning("failure_callback_dropped", error=str(e))
            return CallbackResult(
                tracking_id=payload.tracking_id,
                outcome=CallbackOutcome.DROPPED,
                message="Failure callback not recorded; the sweep will time the payment out",
            )

    async def _process_callback(self, payload: CallbackPayload) -> CallbackResult:
        tracking_id = payload.tracking_id
        log = self._get_logger(tracking_id)
        now = self._clock()

        txn = await self.store.get(tracking_id)
        if txn is None:
            log.warning("unknown_transaction_callback", status=payload.status.value)
            return CallbackResult(
                tracking_id=tracking_id,
                outcome=CallbackOutcome.UNKNOWN_TRANSACTION,
                message="No pending transaction with this tracking id",
            )

        self._check_payload_against(txn, payload, log)
        await self._emit_audit(
            event_type=AuditEventType.CALLBACK_RECEIVED,
            entity_type="transaction",
            entity_id=tracking_id,
            tracking_id=tracking_id,
            metadata={"status": payload.status.value, "amount": payload.amount, "currency": payload.currency},
            actor="callback",
        )

        if txn.kind == TransactionKind.REGISTRATION:
            registration = await self.store.get_registration(tracking_id)
            if registration is None:
                log.warning("registration_missing_for_callback")
                return CallbackResult(tracking_id=tracking_id, outcome=CallbackOutcome.UNKNOWN_TRANSACTION)
            if registration.is_expired(now):
                return await self._reject_expired_registration(txn, registration, payload, now)

        outcome = (
            TransactionState.SUCCESS if payload.status == CallbackStatus.SUCCESS
            else TransactionState.FAILED
        )
        try:
            await self.store.resolve(tracking_id, outcome, now=now, metadata=payload.metadata.model_dump(mode="json"))
        except AlreadyResolved as e:
            if e.state == TransactionState.TIMED_OUT and outcome == TransactionState.SUCCESS:
                return await self._handle_late_success(txn, payload)
            log.info("callback_already_resolved", state=e.state.value if e.state else None)
            return CallbackResult(
                tracking_id=tracking_id,
                outcome=CallbackOutcome.ALREADY_RESOLVED,
                state=e.state,
            )

        await self._emit_audit(
            event_type=(
                AuditEventType.PAYMENT_CONFIRMED if outcome == TransactionState.SUCCESS
                else AuditEventType.PAYMENT_FAILED
            ),
            entity_type="transaction",
            entity_id=tracking_id,
            tracking_id=tracking_id,
            previous_state={"state": TransactionState.INITIATED.value},
            new_state={"state": outcome.value},
            metadata={"amount": payload.amount, "currency": payload.currency},
            actor="callback",
        )

        if outcome == TransactionState.FAILED:
            if txn.kind == TransactionKind.REGISTRATION:
                try:
                    await self.store.transition_registration(
                        tracking_id,
                        RegistrationState.AWAITING_PAYMENT,
                        RegistrationState.PAYMENT_FAILED,
                        now=now,
                    )
                except AlreadyResolved:
                    pass
            log.info("payment_failed")
            return CallbackResult(
                tracking_id=tracking_id,
                outcome=CallbackOutcome.RECORDED_FAILURE,
                state=TransactionState.FAILED,
            )

        resolved = txn.model_copy(update={"state": TransactionState.SUCCESS, "resolved_at": now})
        result = await self._settle(resolved, actor="callback")
        if txn.kind == TransactionKind.REGISTRATION:
            outcome_code = CallbackOutcome.PAYMENT_CONFIRMED
        elif result is not None and result.superseded:
            outcome_code = CallbackOutcome.SUPERSEDED
        else:
            outcome_code = CallbackOutcome.APPLIED
        return CallbackResult(tracking_id=tracking_id, outcome=outcome_code, state=TransactionState.SUCCESS)

    def _check_payload_against(self, txn: PendingTransaction, payload: CallbackPayload, log):
        """The stored record is authoritative; mismatches are only logged."""
        if payload.currency.upper() != txn.currency.upper():
            log.warning("currency_mismatch", expected=txn.currency, received=payload.currency)
        if payload.status == CallbackStatus.SUCCESS and not validate_amount(txn.target_tier, payload.amount):
            log.warning("amount_mismatch", expected=txn.amount, received=payload.amount)
        meta = payload.metadata
        if meta.user_id and txn.user_id and meta.user_id != txn.user_id:
            log.warning("metadata_user_mismatch", expected=txn.user_id, received=meta.user_id)
        if meta.target_tier and meta.target_tier != txn.target_tier:
            log.warning("metadata_tier_mismatch", expected=txn.target_tier.value, received=meta.target_tier.value)

    async def _settle(self, txn: PendingTransaction, actor: str = "system") -> Optional[TierChangeResult]:
        """
        Commit the entitlement effect of a SUCCESS transaction, then mark it
        settled. Safe to repeat: the ledger ignores tracking ids it has applied.

        Upgrades never lower an active tier. When callbacks for two upgrades
        land out of order, the lower one is recorded and flagged for refund.
        """
        log = self._get_logger(txn.tracking_id)
        result: Optional[TierChangeResult] = None

        if txn.kind == TransactionKind.UPGRADE:
            result = await self.ledger.apply_tier_change(
                txn.user_id,
                txn.target_tier,
                tracking_id=txn.tracking_id,
                now=self._clock(),
                keep_higher_active=True,
            )
            if result.applied:
                await self._emit_tier_changed(result, txn.tracking_id, actor)
            elif result.superseded:
                log.error(
                    "upgrade_superseded",
                    held_tier=result.record.tier.value,
                    paid_tier=txn.target_tier.value,
                    amount=txn.amount,
                )
                await self._emit_audit(
                    event_type=AuditEventType.PAYMENT_LATE_SUCCESS,
                    entity_type="transaction",
                    entity_id=txn.tracking_id,
                    tracking_id=txn.tracking_id,
                    metadata={
                        "amount": txn.amount,
                        "currency": txn.currency,
                        "held_tier": result.record.tier.value,
                        "paid_tier": txn.target_tier.value,
                        "reason": "superseded_by_higher_tier",
                        "requires_refund_review": True,
                    },
                    actor=actor,
                )
        else:
            try:
                await self.store.transition_registration(
                    txn.tracking_id,
                    RegistrationState.AWAITING_PAYMENT,
                    RegistrationState.PAYMENT_CONFIRMED,
                    now=self._clock(),
                )
                await self._emit_audit(
                    event_type=AuditEventType.REGISTRATION_CONFIRMED,
                    entity_type="registration",
                    entity_id=txn.reference,
                    tracking_id=txn.tracking_id,
                    new_state={"state": RegistrationState.PAYMENT_CONFIRMED.value},
                    actor=actor,
                )
            except (AlreadyResolved, UnknownTransaction) as e:
                log.info("registration_confirmation_skipped", reason=e.code)

        await self.store.mark_settled(txn.tracking_id, now=self._clock())
        log.info("transaction_settled", kind=txn.kind.value)
        return result

    async def _emit_tier_changed(self, result: TierChangeResult, tracking_id: Optional[str], actor: str):
        record = result.record
        await self._emit_audit(
            event_type=AuditEventType.TIER_CHANGED,
            entity_type="subscription",
            entity_id=record.user_id,
            tracking_id=tracking_id,
            previous_state={"tier": result.previous_tier.value if result.previous_tier else None},
            new_state={
                "tier": record.tier.value,
                "period_end": record.period_end.isoformat() if record.period_end else None,
            },
            actor=actor,
        )

    async def _handle_late_success(self, txn: PendingTransaction, payload: CallbackPayload) -> CallbackResult:
        """SUCCESS arriving after the sweep already timed the payment out."""
        log = self._get_logger(txn.tracking_id)

        if self.grant_late_success and txn.kind == TransactionKind.UPGRADE:
            try:
                compensated = await self.store.compensate(txn.tracking_id, now=self._clock())
            except AlreadyResolved as e:
                return CallbackResult(
                    tracking_id=txn.tracking_id, outcome=CallbackOutcome.ALREADY_RESOLVED, state=e.state
                )
            log.warning("late_success_compensated")
            await self._emit_audit(
                event_type=AuditEventType.PAYMENT_CONFIRMED,
                entity_type="transaction",
                entity_id=txn.tracking_id,
                tracking_id=txn.tracking_id,
                previous_state={"state": TransactionState.TIMED_OUT.value},
                new_state={"state": TransactionState.SUCCESS.value},
                metadata={"compensation": True, "amount": payload.amount},
                actor="callback",
            )
            result = await self._settle(compensated, actor="callback")
            return CallbackResult(
                tracking_id=txn.tracking_id,
                outcome=(
                    CallbackOutcome.SUPERSEDED if result is not None and result.superseded
                    else CallbackOutcome.COMPENSATED
                ),
                state=TransactionState.SUCCESS,
            )

        log.error("late_success_after_timeout", amount=payload.amount, user_id=txn.user_id)
        await self._emit_audit(
            event_type=AuditEventType.PAYMENT_LATE_SUCCESS,
            entity_type="transaction",
            entity_id=txn.tracking_id,
            tracking_id=txn.tracking_id,
            metadata={"amount": payload.amount, "currency": payload.currency, "requires_refund_review": True},
            actor="callback",
        )
        return CallbackResult(
            tracking_id=txn.tracking_id,
            outcome=CallbackOutcome.ALREADY_RESOLVED,
            state=TransactionState.TIMED_OUT,
            message="Payment confirmed after timeout; flagged for refund review",
        )

    async def _reject_expired_registration(
        self,
        txn: PendingTransaction,
        registration: PendingRegistration,
        payload: CallbackPayload,
        now: datetime,
    ) -> CallbackResult:
        log = self._get_logger(txn.tracking_id)
        try:
            await self.store.resolve(txn.tracking_id, TransactionState.TIMED_OUT, now=now)
        except AlreadyResolved:
            pass

        if payload.status == CallbackStatus.SUCCESS and registration.state == RegistrationState.AWAITING_PAYMENT:
            log.error("late_success_on_expired_registration", email=registration.email, amount=payload.amount)
            await self._emit_audit(
                event_type=AuditEventType.PAYMENT_LATE_SUCCESS,
                entity_type="registration",
                entity_id=registration.temp_id,
                tracking_id=txn.tracking_id,
                metadata={"amount": payload.amount, "requires_refund_review": True},
                actor="callback",
            )
        else:
            log.info("callback_on_expired_registration", status=payload.status.value)

        return CallbackResult(
            tracking_id=txn.tracking_id,
            outcome=CallbackOutcome.EXPIRED_REGISTRATION,
            message=ExpiredRegistration.code,
        )

    async def _defer_callback(self, payload: CallbackPayload, error: Exception) -> CallbackResult:
        now = self._clock()
        event = CallbackEvent(
            payload=payload,
            attempt_count=1,
            max_attempts=self.callback_max_attempts,
            last_error=str(error),
            created_at=now,
            next_retry_at=now + timedelta(seconds=self.callback_retry_delay),
        )
        await self.retry_queue.enqueue(event)
        await self._emit_audit(
            event_type=AuditEventType.CALLBACK_DEFERRED,
            entity_type="callback",
            entity_id=event.event_id,
            tracking_id=payload.tracking_id,
            metadata={"error": str(error)},
            actor="callback",
        )
        self._get_logger(payload.tracking_id).warning(
            "callback_deferred", event_id=event.event_id, next_retry=event.next_retry_at.isoformat()
        )
        return CallbackResult(tracking_id=payload.tracking_id, outcome=CallbackOutcome.DEFERRED)

    # =========================================================================
    # REGISTRATION COMPLETION
    # =========================================================================

    async def complete_registration(self, tracking_id: str, user_id: str) -> SubscriptionRecord:
        """
        Grant the paid tier once the account exists. Requires a confirmed
        payment and an unexpired registration; expired ones must restart.
        """
        now = self._clock()
        log = self._get_logger(tracking_id).bind(user_id=user_id)

        registration = await self.store.get_registration(tracking_id)
        if registration is None:
            raise UnknownTransaction(f"No pending registration {tracking_id}", tracking_id)
        if registration.state == RegistrationState.COMPLETED:
            raise AlreadyResolved(f"Registration {tracking_id} already completed", tracking_id)
        if registration.is_expired(now):
            raise ExpiredRegistration("Registration session expired. Please start over.", tracking_id)
        if registration.state != RegistrationState.PAYMENT_CONFIRMED:
            raise ValidationError(
                f"Payment for registration {tracking_id} is {registration.state.value}", tracking_id
            )

        existing = await self.ledger.get_record(user_id)
        if existing is not None and existing.tier.rank >= registration.target_tier.rank and (
            existing.status(now) == SubscriptionStatus.ACTIVE
        ):
            log.warning("registration_onto_active_account", held_tier=existing.tier.value)
            raise ValidationError(
                f"Account {user_id} already holds an active {existing.tier.value} subscription", tracking_id
            )

        # Claim the registration first so only one account can receive the tier
        await self.store.transition_registration(
            tracking_id, RegistrationState.PAYMENT_CONFIRMED, RegistrationState.COMPLETED, now=now
        )
        try:
            await self.ledger.create_account(user_id, registration.email, registration.phone, now=now)
            result = await self.ledger.apply_tier_change(
                user_id, registration.target_tier, tracking_id=tracking_id, now=now, keep_higher_active=True
            )
            if result.superseded:
                raise ValidationError(
                    f"Account {user_id} was upgraded past {registration.target_tier.value} meanwhile", tracking_id
                )
        except Exception:
            log.error("registration_grant_failed", exc_info=True)
            await self.store.transition_registration(
                tracking_id, RegistrationState.COMPLETED, RegistrationState.PAYMENT_CONFIRMED
            )
            raise

        if result.applied:
            await self._emit_tier_changed(result, tracking_id, actor="user")
        await self._emit_audit(
            event_type=AuditEventType.REGISTRATION_COMPLETED,
            entity_type="registration",
            entity_id=registration.temp_id,
            tracking_id=tracking_id,
            new_state={"state": RegistrationState.COMPLETED.value, "user_id": user_id},
            actor="user",
        )
        log.info("registration_completed", tier=registration.target_tier.value)
        return result.record

    # =========================================================================
    # EXPLICIT DOWNGRADE / CANCELLATION / ADMIN
    # =========================================================================

    async def cancel_subscription(self, user_id: str, actor: str = "user") -> SubscriptionRecord:
        result = await self.ledger.cancel_at_period_end(user_id, now=self._clock())
        if result.applied:
            await self._emit_audit(
                event_type=AuditEventType.SUBSCRIPTION_CANCELLED,
                entity_type="subscription",
                entity_id=user_id,
                new_state={"cancel_at_period_end": True},
                actor=actor,
            )
        return result.record

    async def reactivate_subscription(self, user_id: str, actor: str = "user") -> SubscriptionRecord:
        result = await self.ledger.reactivate(user_id, now=self._clock())
        if result.applied:
            await self._emit_audit(
                event_type=AuditEventType.SUBSCRIPTION_REACTIVATED,
                entity_type="subscription",
                entity_id=user_id,
                new_state={"cancel_at_period_end": False},
                actor=actor,
            )
        return result.record

    async def downgrade_to_free(self, user_id: str, actor: str = "user") -> SubscriptionRecord:
        return await self.admin_set_tier(user_id, FREE_TIER, actor=actor)

    async def admin_set_tier(self, user_id: str, tier, actor: str = "admin") -> SubscriptionRecord:
        """Manual tier change. Competes with callbacks through the same ledger CAS."""
        result = await self.ledger.apply_tier_change(user_id, parse_tier(tier), now=self._clock())
        if result.applied:
            await self._emit_tier_changed(result, None, actor)
        return result.record

    # =========================================================================
    # RECONCILIATION
    # =========================================================================

    async def reconcile(self, now: Optional[datetime] = None) -> ReconcileReport:
        """
        One sweep pass:
        1. time out INITIATED transactions past their TTL (no tier change)
        2. purge registrations past their TTL, whatever arrives later
        3. settle SUCCESS transactions whose entitlement never got committed
        4. retry parked SUCCESS callbacks
        """
        now = now or self._clock()
        log = self._get_logger().bind(pass_at=now.isoformat())
        report = ReconcileReport()

        for txn in await self.store.sweep(now):
            report.timed_out.append(txn.tracking_id)
            await self._emit_audit(
                event_type=AuditEventType.PAYMENT_TIMED_OUT,
                entity_type="transaction",
                entity_id=txn.tracking_id,
                tracking_id=txn.tracking_id,
                previous_state={"state": TransactionState.INITIATED.value},
                new_state={"state": TransactionState.TIMED_OUT.value},
                actor="reconciler",
            )

        for registration in await self.store.get_expired_registrations(now):
            await self._purge_registration(registration)
            report.registrations_purged.append(registration.tracking_id)

        for txn in await self.store.get_unsettled(resolved_before=now - self.settlement_grace):
            try:
                await self._settle(txn, actor="reconciler")
                report.settled.append(txn.tracking_id)
            except Exception as e:
                log.error("settlement_retry_failed", tracking_id=txn.tracking_id, error=str(e))

        for event in await self.retry_queue.get_due(now):
            if await self._retry_callback(event, now):
                report.callbacks_retried += 1
            elif event.dead_letter:
                report.callbacks_dead_lettered += 1

        log.info("reconcile_complete",
                 timed_out=len(report.timed_out),
                 registrations_purged=len(report.registrations_purged),
                 settled=len(report.settled),
                 callbacks_retried=report.callbacks_retried)
        return report

    async def _purge_registration(self, registration: PendingRegistration) -> None:
        log = self._get_logger(registration.tracking_id)
        if registration.state == RegistrationState.PAYMENT_CONFIRMED:
            # Paid but the account never materialised inside the window
            log.error("paid_registration_expired", email=registration.email)

        await self.store.delete_registration(registration.tracking_id)
        if registration.state != RegistrationState.COMPLETED:
            await self.store.discard(registration.tracking_id)

        await self._emit_audit(
            event_type=AuditEventType.REGISTRATION_EXPIRED,
            entity_type="registration",
            entity_id=registration.temp_id,
            tracking_id=registration.tracking_id,
            previous_state={"state": registration.state.value},
            metadata={"requires_refund_review": registration.state == RegistrationState.PAYMENT_CONFIRMED},
            actor="reconciler",
        )
        log.info("registration_purged", state=registration.state.value)

    async def _retry_callback(self, event: CallbackEvent, now: datetime) -> bool:
        payload = event.payload
        log = self._get_logger(payload.tracking_id).bind(event_id=event.event_id)
        try:
            txn = await self.store.get(payload.tracking_id)
            if txn is not None and txn.needs_settlement:
                await self._settle(txn, actor="reconciler")
            else:
                await self._process_callback(payload)
            await self.retry_queue.mark_processed(event.event_id)
            log.info("callback_retry_succeeded", attempts=event.attempt_count + 1)
            return True
        except Exception as e:
            event.attempt_count += 1
            event.last_error = str(e)
            if event.is_retriable:
                event.next_retry_at = now + timedelta(seconds=self.callback_retry_delay * event.attempt_count)
                log.warning("callback_retry_scheduled", attempt=event.attempt_count, error=str(e))
            else:
                event.dead_letter = True
                log.error("callback_dead_letter", attempts=event.attempt_count, error=str(e))
                await self._emit_audit(
                    event_type=AuditEventType.CALLBACK_DEAD_LETTER,
                    entity_type="callback",
                    entity_id=event.event_id,
                    tracking_id=payload.tracking_id,
                    metadata={"error": str(e), "attempts": event.attempt_count},
                    actor="reconciler",
                )
            await self.retry_queue.update(event)
            return False

    # =========================================================================
    # PUBLIC READS
    # =========================================================================

    async def get_transaction(self, tracking_id: str) -> Optional[PendingTransaction]:
        return await self.store.get(tracking_id)

    async def get_registration(self, tracking_id: str) -> Optional[PendingRegistration]:
        return await self.store.get_registration(tracking_id)

    async def get_audit_trail(self, tracking_id: str) -> list[AuditLogEntry]:
        return await self.audit.get_by_tracking_id(tracking_id)

    async def get_retry_queue_stats(self) -> dict:
        return await self.retry_queue.get_stats()

"""Routing decision engine.

Chooses per request between BYOK (the tenant's own key; free, unmetered)
and Managed (the platform key; admitted, metered and settled), and
degrades to a fallback model once when the provider call fails.

    decide ──▶ BYOK ────▶ provider call ─────────────────────▶ result
          └──▶ MANAGED ─▶ admission ─▶ provider call ─▶ settle ─▶ result
    provider failure (after retries) ─▶ fallback model (managed) ─▶ settle
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from enum import Enum

import structlog

from tollbooth.core.errors import (
    AdmissionDeniedError,
    BillingError,
    FallbackExhaustedError,
    InsufficientFundsError,
    RoutingError,
)
from tollbooth.models.ledger import UsageType
from tollbooth.providers.base import ChatProvider, Completion
from tollbooth.providers.config import ProviderConfig
from tollbooth.providers.errors import ProviderError, ProviderUnavailableError
from tollbooth.providers.retry import with_retries
from tollbooth.services.admission import AdmissionController, AdmissionDecision
from tollbooth.services.credential_store import CredentialStore
from tollbooth.services.ledger_store import (
    LedgerStore,
    coerce_tenant_id,
    validate_reference,
)
from tollbooth.services.settlement import Settlement, SettlementEngine

logger = structlog.get_logger()


class RoutingMode(Enum):
    """Execution path for a request."""

    BYOK = "byok"
    MANAGED = "managed"


@dataclass(frozen=True)
class CompletionRequest:
    """A tenant's completion request.

    Attributes:
        tenant_id: Requesting tenant.
        prompt: User prompt.
        model: Requested model; the configured primary model when None.
        max_tokens: Max output tokens.
        temperature: Sampling temperature.
        expected_output_tokens: Output estimate for admission.
        prefer_byok: Use the tenant's own key when one is available.
        allow_fallback: Try the fallback model once if the call fails.
        skip_preflight: Skip the admission check on the managed path.
        flow_id: Optional workflow identifier recorded on the ledger entry.
    """

    tenant_id: uuid.UUID | str
    prompt: str
    model: str | None = None
    max_tokens: int | None = None
    temperature: float | None = None
    expected_output_tokens: int | None = None
    prefer_byok: bool = True
    allow_fallback: bool = True
    skip_preflight: bool = False
    flow_id: str | None = None


@dataclass
class RoutingContext:
    """Per-request routing state.

    Attributes:
        tenant_id: Requesting tenant.
        prompt: User prompt.
        requested_model: Model chosen for the first attempt.
        has_credential: Whether a usable tenant credential was found.
        mode: Chosen execution path.
        reason: Why this path was chosen.
        admission: Pre-flight decision on the managed path.
    """

    tenant_id: uuid.UUID
    prompt: str
    requested_model: str
    has_credential: bool
    mode: RoutingMode
    reason: str
    admission: AdmissionDecision | None = None
    credential: str | None = field(default=None, repr=False)


@dataclass(frozen=True)
class BillingSummary:
    """What the tenant was charged for a managed call.

    Attributes:
        cost_cents: Charged amount.
        original_cost_cents: Amount before discount.
        savings_cents: Discount in cents.
        discount_percent: Applied discount.
        discount_tier: Applied tier label.
        balance_after_cents: Balance after the debit.
    """

    cost_cents: int
    original_cost_cents: int
    savings_cents: int
    discount_percent: int
    discount_tier: str
    balance_after_cents: int

    @classmethod
    def from_settlement(cls, settlement: Settlement) -> "BillingSummary":
        b = settlement.breakdown
        return cls(
            cost_cents=b.cost_cents,
            original_cost_cents=b.original_cost_cents,
            savings_cents=b.savings_cents,
            discount_percent=b.discount_percent,
            discount_tier=b.discount_tier,
            balance_after_cents=settlement.balance_after_cents,
        )


@dataclass(frozen=True)
class RoutedCompletion:
    """Result of a routed request.

    Attributes:
        completion: Provider output.
        mode: Path that produced the output.
        reason: Routing reason.
        model: Model the output was billed against.
        used_fallback: True when the fallback model produced the output.
        billing: Charge details; None for BYOK or failed settlement.
        billing_reconciliation_required: The call succeeded but the
            charge could not be settled and must be reconciled.
        primary_error: Description of the failure that triggered fallback.
    """

    completion: Completion
    mode: RoutingMode
    reason: str
    model: str
    used_fallback: bool = False
    billing: BillingSummary | None = None
    billing_reconciliation_required: bool = False
    primary_error: str | None = None

    @property
    def text(self) -> str:
        return self.completion.text

    @property
    def cost_cents(self) -> int:
        return self.billing.cost_cents if self.billing else 0


class RoutingEngine:
    """Routes completion requests to BYOK or managed execution.

    Args:
        credentials: Tenant credential source.
        provider: Chat provider used for both paths.
        ledger: Ledger store (balances and monthly usage).
        admission: Pre-flight admission controller.
        settlement: Post-flight settlement engine.
        config: Provider configuration (platform key, models, retries).
    """

    def __init__(
        self,
        credentials: CredentialStore,
        provider: ChatProvider,
        ledger: LedgerStore,
        admission: AdmissionController,
        settlement: SettlementEngine,
        config: ProviderConfig,
    ) -> None:
        self._credentials = credentials
        self._provider = provider
        self._ledger = ledger
        self._admission = admission
        self._settlement = settlement
        self._config = config

    # -------------------------------------------------------------------------
    # Decide
    # -------------------------------------------------------------------------

    async def decide(self, request: CompletionRequest) -> RoutingContext:
        """Pick BYOK or Managed for a request.

        Raises:
            InvalidInputError: Malformed tenant id or flow id.
            RoutingError: A stored credential failed to decrypt, or no
                platform key is configured for the managed path.
            AdmissionDeniedError: Managed request the balance cannot cover.
        """
        tenant_id = coerce_tenant_id(request.tenant_id)
        validate_reference("flow_id", request.flow_id)
        model = request.model or self._config.primary_model

        if request.prefer_byok:
            stored = await self._credentials.find_active_credential(tenant_id)
            if stored is not None:
                plain = await self._credentials.decrypt(stored)
                context = RoutingContext(
                    tenant_id=tenant_id,
                    prompt=request.prompt,
                    requested_model=model,
                    has_credential=True,
                    mode=RoutingMode.BYOK,
                    reason="tenant credential available",
                    credential=plain,
                )
                self._log_decision(context)
                return context
            reason = "no active tenant credential"
        else:
            reason = "tenant credential not requested"

        self._require_platform_key()
        admission = None
        if not request.skip_preflight:
            admission = await self._admit(
                tenant_id, request.prompt, model, request.expected_output_tokens
            )
        context = RoutingContext(
            tenant_id=tenant_id,
            prompt=request.prompt,
            requested_model=model,
            has_credential=False,
            mode=RoutingMode.MANAGED,
            reason=reason,
            admission=admission,
        )
        self._log_decision(context)
        return context

    # -------------------------------------------------------------------------
    # Execute
    # -------------------------------------------------------------------------

    async def complete(self, request: CompletionRequest) -> RoutedCompletion:
        """Route and execute a completion request.

        Returns:
            The output with its mode, model and billing outcome. A managed
            call whose settlement failed still returns its output, flagged
            with ``billing_reconciliation_required``.

        Raises:
            AdmissionDeniedError: Rejected before any provider call.
            RoutingError: Credential or configuration problem.
            ProviderError: The call failed and fallback was not allowed.
            FallbackExhaustedError: Primary and fallback both failed.
        """
        context = await self.decide(request)
        credential = (
            context.credential
            if context.mode is RoutingMode.BYOK
            else self._config.platform_api_key
        )

        try:
            completion = await self._call(
                credential or "", context.requested_model, request
            )
        except ProviderError as primary_error:
            if not (request.allow_fallback and self._config.fallback_enabled):
                raise
            return await self._fallback(context, request, primary_error)

        if context.mode is RoutingMode.BYOK:
            return RoutedCompletion(
                completion=completion,
                mode=RoutingMode.BYOK,
                reason=context.reason,
                model=context.requested_model,
            )
        return await self._settle_managed(
            context, request, completion, context.requested_model
        )

    async def _fallback(
        self,
        context: RoutingContext,
        request: CompletionRequest,
        primary_error: ProviderError,
    ) -> RoutedCompletion:
        fallback_model = self._config.fallback_model
        logger.warning(
            "provider_fallback",
            tenant_id=str(context.tenant_id),
            mode=context.mode.value,
            primary_model=context.requested_model,
            fallback_model=fallback_model,
            error=str(primary_error),
            error_type=type(primary_error).__name__,
        )

        # The fallback always runs managed; a BYOK request becomes metered
        # here, so it has to pass admission first.
        try:
            self._require_platform_key()
            if context.mode is RoutingMode.BYOK and not request.skip_preflight:
                await self._admit(
                    context.tenant_id,
                    request.prompt,
                    fallback_model,
                    request.expected_output_tokens,
                )
            completion = await self._call(
                self._config.platform_api_key or "", fallback_model, request
            )
        except (ProviderError, RoutingError, AdmissionDeniedError) as fallback_error:
            logger.error(
                "provider_fallback_failed",
                tenant_id=str(context.tenant_id),
                primary_model=context.requested_model,
                fallback_model=fallback_model,
                primary_error=str(primary_error),
                fallback_error=str(fallback_error),
            )
            raise FallbackExhaustedError(primary_error, fallback_error) from fallback_error

        return await self._settle_managed(
            context,
            request,
            completion,
            fallback_model,
            used_fallback=True,
            primary_error=primary_error,
        )

    async def _call(
        self, credential: str, model: str, request: CompletionRequest
    ) -> Completion:
        timeout = self._config.timeout_seconds

        async def attempt() -> Completion:
            try:
                return await asyncio.wait_for(
                    self._provider.chat_completion(
                        request.prompt,
                        credential,
                        model,
                        max_tokens=request.max_tokens,
                        temperature=request.temperature,
                    ),
                    timeout=timeout,
                )
            except TimeoutError as e:
                raise ProviderUnavailableError(
                    f"{model} did not respond within {timeout:g}s"
                ) from e

        return await with_retries(attempt, self._config)

    # -------------------------------------------------------------------------
    # Settle
    # -------------------------------------------------------------------------

    async def _settle_managed(
        self,
        context: RoutingContext,
        request: CompletionRequest,
        completion: Completion,
        model: str,
        used_fallback: bool = False,
        primary_error: ProviderError | None = None,
    ) -> RoutedCompletion:
        # The provider already charged the platform; cancelling the caller
        # must not cancel the debit.
        settlement = await asyncio.shield(
            self._settle_or_flag(context.tenant_id, completion, model, request.flow_id)
        )
        reason = context.reason
        if used_fallback:
            reason = f"fallback to {model} after primary failure"
        return RoutedCompletion(
            completion=completion,
            mode=RoutingMode.MANAGED,
            reason=reason,
            model=model,
            used_fallback=used_fallback,
            billing=BillingSummary.from_settlement(settlement) if settlement else None,
            billing_reconciliation_required=settlement is None,
            primary_error=str(primary_error) if primary_error else None,
        )

    async def _settle_or_flag(
        self,
        tenant_id: uuid.UUID,
        completion: Completion,
        model: str,
        flow_id: str | None,
    ) -> Settlement | None:
        """Settle a successful managed call; log and return None on failure."""
        input_tokens = max(0, completion.input_tokens)
        output_tokens = max(0, completion.output_tokens)
        monthly: int | None = None
        try:
            monthly = await self._ledger.monthly_usage(tenant_id, UsageType.LLM)
            return await self._settlement.settle(
                tenant_id,
                input_tokens,
                output_tokens,
                model,
                monthly_quantity_before=monthly,
                flow_id=flow_id,
            )
        except Exception as e:
            # Output is kept; the log carries what reconciliation needs
            if isinstance(e, InsufficientFundsError):
                charge = e.required
            else:
                charge = self._settlement.quote(
                    input_tokens, output_tokens, model, monthly or 0
                ).cost_cents
            logger.error(
                "settlement_failed",
                tenant_id=str(tenant_id),
                model=model,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                charge_cents=charge,
                error=str(e),
                error_type=type(e).__name__,
                error_code=e.code if isinstance(e, BillingError) else None,
            )
            return None

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _admit(
        self,
        tenant_id: uuid.UUID,
        prompt: str,
        model: str,
        expected_output_tokens: int | None,
    ) -> AdmissionDecision:
        balance = await self._ledger.get_balance(tenant_id)
        decision = self._admission.preflight(
            balance,
            prompt,
            model,
            expected_output_tokens=expected_output_tokens,
            is_byok=False,
            tenant_id=tenant_id,
        )
        if not decision.allowed:
            raise AdmissionDeniedError(decision)
        return decision

    def _require_platform_key(self) -> None:
        if not self._config.platform_api_key:
            raise RoutingError("No platform credential configured for managed requests")

    @staticmethod
    def _log_decision(context: RoutingContext) -> None:
        logger.info(
            "routing_decision",
            tenant_id=str(context.tenant_id),
            mode=context.mode.value,
            reason=context.reason,
            model=context.requested_model,
            estimated_cost_cents=(
                context.admission.estimated_cost_cents if context.admission else 0
            ),
        )

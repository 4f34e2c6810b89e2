"""Transaction pipeline.

    DRAFT -> QUOTED -> SIMULATED -> SIGNED -> SUBMITTED -> CONFIRMED
                  \\__________\\_________\\__________\\______> FAILED

A transaction is only signed after its exact built form passed
simulation, and only after the balance was re-checked under the wallet
lock. Broadcast happens once; a failed broadcast is reported, never
retried.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Optional

from hotwallet.contracts.transactions import (
    BatchItemOutcome,
    FeeQuote,
    Priority,
    ReceiptStatus,
    SimulationResult,
    TransactionReceipt,
    TransactionRequest,
    TransactionResult,
    TransactionState,
)
from hotwallet.errors import (
    HotWalletError,
    InsufficientBalanceError,
    NetworkUnavailableError,
    SimulationError,
    TransactionError,
    ValidationError,
)
from hotwallet.handlers.registry import ChainHandlerRegistry
from hotwallet.networks import Network, NetworkFamily
from hotwallet.services.gas import GasService
from hotwallet.types import SignedTransaction, TransactionDraft, Transfer, UnsignedTransaction
from hotwallet.units import format_units, parse_units
from hotwallet.wallet.manager import WalletManager

logger = logging.getLogger(__name__)

_TERMINAL = {TransactionState.CONFIRMED, TransactionState.FAILED}


@dataclass
class PipelineJob:
    """One transaction moving through the pipeline."""

    draft: TransactionDraft
    priority: Priority = Priority.MEDIUM
    request: Optional[TransactionRequest] = None
    asset_label: str = ""
    amount_label: str = "0"
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: TransactionState = TransactionState.DRAFT
    unsigned: Optional[UnsignedTransaction] = None
    quote: Optional[FeeQuote] = None
    simulation: Optional[SimulationResult] = None
    tx_hash: Optional[str] = None
    receipt: Optional[TransactionReceipt] = None
    error: Optional[HotWalletError] = None
    auto_nonce: bool = True
    transitions: list[tuple[TransactionState, float]] = field(default_factory=list)

    def __post_init__(self):
        self.transitions.append((self.state, time.time()))

    @property
    def network(self) -> Network:
        return self.draft.network

    @property
    def sender(self) -> str:
        return self.draft.sender

    def transition(self, state: TransactionState) -> None:
        if self.state in _TERMINAL:
            raise ValidationError(f"Job {self.id} is already {self.state.value}")
        logger.debug(f"Job {self.id} {self.state.value} -> {state.value}")
        self.state = state
        self.transitions.append((state, time.time()))

    def fail(self, error: HotWalletError) -> None:
        self.error = error
        if self.state not in _TERMINAL:
            self.transition(TransactionState.FAILED)

    def result(self) -> TransactionResult:
        return TransactionResult(
            network=self.network,
            state=self.state,
            hash=self.tx_hash,
            fee_quote=self.quote,
            simulation=self.simulation,
            receipt=self.receipt,
            error=self.error.to_dict() if self.error else None,
        )


class TransactionPipeline:
    """Runs transactions from request to confirmation."""

    def __init__(
        self,
        registry: ChainHandlerRegistry,
        wallets: WalletManager,
        gas: GasService,
        session_factory: Optional[Callable] = None,
        confirm_timeout: float = 120.0,
        poll_interval: float = 2.0,
    ):
        self.registry = registry
        self.wallets = wallets
        self.gas = gas
        self._session_factory = session_factory
        self.confirm_timeout = confirm_timeout
        self.poll_interval = poll_interval
        self._submitted: dict[tuple[Network, str], list[PipelineJob]] = {}

    # ======================
    # DRAFT
    # ======================

    async def draft_from_request(self, request: TransactionRequest) -> PipelineJob:
        """Validate a request and turn it into a job in DRAFT state."""
        config = self.registry.config(request.network)
        handler = self.registry.handler(request.network)

        if not handler.validate_address(request.from_address):
            raise ValidationError(f"Invalid sender address: {request.from_address}", address=request.from_address)
        if not handler.validate_address(request.to_address):
            raise ValidationError(f"Invalid recipient address: {request.to_address}", address=request.to_address)
        wallet = self.wallets.get_wallet(config.network, request.from_address)

        if config.family != NetworkFamily.EVM and (request.nonce is not None or request.data):
            raise ValidationError("Explicit nonce and calldata are only supported on EVM networks")

        if request.token:
            asset = handler.resolve_token(request.token)
            decimals = await self.registry.token_decimals(config.network, asset)
            standard = "erc20" if config.family == NetworkFamily.EVM else "spl"
            if request.data:
                raise ValidationError("Calldata cannot be combined with a token transfer")
        else:
            asset, decimals, standard = None, config.decimals, None

        amount = parse_units(request.amount, decimals)
        if amount == 0 and not request.data:
            raise ValidationError("Amount must be greater than zero", amount=request.amount)

        draft = TransactionDraft(
            network=config.network,
            sender=wallet.address,
            transfers=[Transfer(to=request.to_address, amount=amount, asset=asset, standard=standard)],
            nonce=request.nonce,
            data=request.data,
        )
        return PipelineJob(
            draft=draft,
            priority=request.priority,
            request=request,
            asset_label=request.token or config.symbol,
            amount_label=format_units(amount, decimals),
            auto_nonce=request.nonce is None,
        )

    # ======================
    # QUOTED
    # ======================

    async def prepare(self, request: TransactionRequest) -> PipelineJob:
        """Build and quote a transaction for ``request`` (-> QUOTED)."""
        job = await self.draft_from_request(request)
        return await self.prepare_job(job)

    async def prepare_job(self, job: PipelineJob) -> PipelineJob:
        """Resolve the nonce, build the transaction and attach a fee quote."""
        network = job.network
        try:
            skeleton = await self.registry.build_unsigned_transaction(network, job.draft)
            # Quote and final build must use the same nonce
            job.draft.nonce = skeleton.nonce
            quote = await self.gas.quote(network, skeleton, job.priority)
            unsigned = await self.registry.build_unsigned_transaction(network, job.draft, quote)
        except HotWalletError as e:
            job.fail(e)
            raise

        job.unsigned = unsigned
        job.quote = unsigned.fee
        job.transition(TransactionState.QUOTED)
        logger.info(
            f"Prepared {network.value} job {job.id} from {job.sender}: "
            f"{job.amount_label} {job.asset_label}, fee {job.quote.estimated_cost}"
        )
        return job

    # ======================
    # SIMULATED
    # ======================

    async def simulate(self, job: PipelineJob) -> PipelineJob:
        """Dry-run the exact built transaction.

        Raises:
            SimulationError: If the dry-run rejects the transaction (job -> FAILED)
        """
        if job.unsigned is None or job.state not in (TransactionState.QUOTED, TransactionState.SIMULATED):
            raise ValidationError(f"Job {job.id} cannot be simulated in state {job.state.value}")

        try:
            result = await self.registry.simulate(job.network, job.unsigned)
        except HotWalletError as e:
            job.fail(e)
            raise

        job.simulation = result
        if not result.success:
            error = SimulationError(result.error_detail or "rejected", network=job.network.value)
            job.fail(error)
            logger.warning(f"Simulation failed for job {job.id}: {result.error_detail}")
            raise error

        if job.state != TransactionState.SIMULATED:
            job.transition(TransactionState.SIMULATED)
        return job

    # ======================
    # SIGNED -> SUBMITTED
    # ======================

    async def _refresh_nonce(self, job: PipelineJob) -> None:
        """Rebuild when another send from the same wallet consumed the quoted nonce."""
        if not job.auto_nonce or job.unsigned.nonce is None:
            return
        current = await self.registry.get_nonce(job.network, job.sender)
        if current == job.unsigned.nonce:
            return

        logger.info(f"Nonce moved from {job.unsigned.nonce} to {current} for job {job.id}, rebuilding")
        job.draft.nonce = current
        job.unsigned = await self.registry.build_unsigned_transaction(job.network, job.draft, job.quote)
        if job.simulation is not None:
            await self.simulate(job)

    async def _refresh_inputs(self, job: PipelineJob) -> None:
        """Re-select coins so no input is shared with another unconfirmed send.

        Coins are picked at prepare time outside the wallet lock, so two
        sends prepared together may hold the same outpoints.
        """
        if self.registry.config(job.network).family != NetworkFamily.UTXO:
            return
        job.draft.reserved_outpoints = self._reserved_outpoints(job)
        job.unsigned = await self.registry.build_unsigned_transaction(job.network, job.draft, job.quote)
        job.quote = job.unsigned.fee
        if job.simulation is not None:
            await self.simulate(job)

    async def _check_balance(self, job: PipelineJob) -> None:
        """Re-read balances right before signing.

        Raises:
            InsufficientBalanceError: If amount plus fee exceeds what is available
        """
        config = self.registry.config(job.network)
        unsigned = job.unsigned
        fee = unsigned.fee.estimated_cost if unsigned.fee else 0

        native_required = unsigned.native_amount() + fee
        native_available = await self.registry.get_balance(job.network, job.sender)
        if native_available < native_required:
            raise InsufficientBalanceError(native_available, native_required, asset=config.symbol)

        for asset, required in unsigned.token_amounts().items():
            available = await self.registry.get_balance(job.network, job.sender, asset)
            if available < required:
                raise InsufficientBalanceError(available, required, asset=asset)

    async def sign_and_submit(self, job: PipelineJob, skip_simulation: bool = False) -> PipelineJob:
        """Sign and broadcast under the wallet lock (-> SUBMITTED).

        Args:
            job: A QUOTED or SIMULATED job
            skip_simulation: Sign without a successful simulation

        Raises:
            ValidationError: If the job has not passed simulation
            InsufficientBalanceError: If the balance no longer covers amount plus fee
            TransactionError: If the broadcast failed (never retried)
        """
        if job.state in _TERMINAL or job.unsigned is None:
            raise ValidationError(f"Job {job.id} cannot be signed in state {job.state.value}")
        if not skip_simulation and (job.simulation is None or not job.simulation.success):
            raise ValidationError("Transaction must pass simulation before signing", job_id=job.id)

        async with self.wallets.wallet_lock(job.network, job.sender, operation="send"):
            try:
                await self._refresh_nonce(job)
                await self._refresh_inputs(job)
                await self._check_balance(job)
                signed: SignedTransaction = await self.wallets.with_signing_key(
                    job.network,
                    job.sender,
                    lambda key: self.registry.sign(job.network, job.unsigned, key),
                )
            except HotWalletError as e:
                job.fail(e)
                raise
            job.transition(TransactionState.SIGNED)

            try:
                job.tx_hash = await self.registry.broadcast(job.network, signed)
            except HotWalletError as e:
                if not isinstance(e, TransactionError):
                    e = TransactionError(str(e), context={"network": job.network.value, "hash": signed.hash})
                job.fail(e)
                raise e

            job.transition(TransactionState.SUBMITTED)
            self._submitted.setdefault(self._wallet_key(job), []).append(job)

        await self._persist_submitted(job)
        logger.info(f"Submitted {job.network.value} transaction {job.tx_hash} (job {job.id})")
        return job

    # ======================
    # CONFIRMED
    # ======================

    async def confirm(
        self,
        job: PipelineJob,
        timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
    ) -> PipelineJob:
        """Poll the receipt until the network's confirmation threshold.

        Returns the job still SUBMITTED if the threshold was not reached
        within ``timeout``.

        Raises:
            TransactionError: If the transaction reverted on chain (job -> FAILED)
        """
        if job.state == TransactionState.CONFIRMED:
            return job
        if job.state != TransactionState.SUBMITTED:
            raise ValidationError(f"Job {job.id} is not submitted")

        timeout = self.confirm_timeout if timeout is None else timeout
        poll_interval = self.poll_interval if poll_interval is None else poll_interval
        required = self.registry.handler(job.network).confirmations_required
        deadline = time.monotonic() + timeout

        while True:
            try:
                receipt = await self.registry.get_receipt(job.network, job.tx_hash)
            except NetworkUnavailableError as e:
                logger.warning(f"Receipt lookup for {job.tx_hash} failed: {e}")
                receipt = None

            if receipt is not None:
                job.receipt = receipt
                if receipt.status == ReceiptStatus.FAILED:
                    error = TransactionError(
                        "Transaction reverted on chain",
                        context={"network": job.network.value, "hash": job.tx_hash, "block": receipt.block_number},
                    )
                    job.fail(error)
                    self._forget(job)
                    await self._persist_state(job)
                    raise error
                if receipt.status == ReceiptStatus.SUCCESS and receipt.confirmations >= required:
                    job.transition(TransactionState.CONFIRMED)
                    self._forget(job)
                    await self._persist_state(job)
                    logger.info(f"Confirmed {job.tx_hash} with {receipt.confirmations} confirmations")
                    return job

            if time.monotonic() >= deadline:
                return job
            await asyncio.sleep(poll_interval)

    # ======================
    # Full runs
    # ======================

    async def run_job(
        self, job: PipelineJob, wait: bool = True, timeout: Optional[float] = None
    ) -> PipelineJob:
        if job.state == TransactionState.DRAFT:
            await self.prepare_job(job)
        await self.simulate(job)
        await self.sign_and_submit(job)
        if wait:
            await self.confirm(job, timeout=timeout)
        return job

    async def execute(
        self, request: TransactionRequest, wait: bool = True, timeout: Optional[float] = None
    ) -> TransactionResult:
        """Prepare, simulate, sign, submit and (optionally) wait for confirmation."""
        job = await self.draft_from_request(request)
        await self.run_job(job, wait=wait, timeout=timeout)
        return job.result()

    async def execute_batch(
        self, requests: list[TransactionRequest], wait: bool = False, timeout: Optional[float] = None
    ) -> list[BatchItemOutcome]:
        """Execute several transfers, atomically when the chain allows it.

        Items sharing network, sender and asset go into one transaction when
        the network family supports it; otherwise every item runs on its
        own. A failed item never undoes the others.
        """
        if not requests:
            return []

        combined = await self._combined_job(requests)
        if combined is not None:
            try:
                await self.run_job(combined, wait=wait, timeout=timeout)
            except HotWalletError as e:
                logger.warning(f"Batch transaction failed: {e.message}")
            return [self._outcome(index, combined) for index in range(len(requests))]

        outcomes = []
        for index, request in enumerate(requests):
            try:
                result = await self.execute(request, wait=wait, timeout=timeout)
            except HotWalletError as e:
                logger.warning(f"Batch item {index} failed: {e.message}")
                outcomes.append(
                    BatchItemOutcome(index=index, success=False, state=TransactionState.FAILED, error=e.to_dict())
                )
                continue
            outcomes.append(
                BatchItemOutcome(index=index, success=True, state=result.state, hash=result.hash)
            )
        return outcomes

    async def _combined_job(self, requests: list[TransactionRequest]) -> Optional[PipelineJob]:
        if len(requests) < 2:
            return None
        first = requests[0]
        same = all(
            r.network == first.network
            and r.from_address == first.from_address
            and r.token == first.token
            and r.nonce is None
            and not r.data
            for r in requests
        )
        if not same:
            return None

        jobs = [await self.draft_from_request(r) for r in requests]
        transfers = [t for job in jobs for t in job.draft.transfers]
        draft = TransactionDraft(network=jobs[0].network, sender=jobs[0].sender, transfers=transfers)
        if not self.registry.supports_atomic_batch(draft.network, draft):
            return None

        total = sum(t.amount for t in transfers)
        decimals = (
            self.registry.config(draft.network).decimals
            if transfers[0].is_native
            else await self.registry.token_decimals(draft.network, transfers[0].asset)
        )
        return PipelineJob(
            draft=draft,
            priority=first.priority,
            asset_label=jobs[0].asset_label,
            amount_label=format_units(total, decimals),
        )

    @staticmethod
    def _outcome(index: int, job: PipelineJob) -> BatchItemOutcome:
        success = job.state in (TransactionState.SUBMITTED, TransactionState.CONFIRMED)
        return BatchItemOutcome(
            index=index,
            success=success,
            state=job.state,
            hash=job.tx_hash,
            error=job.error.to_dict() if job.error and not success else None,
        )

    # ======================
    # Tracking
    # ======================

    @staticmethod
    def _wallet_key(job: PipelineJob) -> tuple[Network, str]:
        sender = job.sender.lower() if job.sender.startswith("0x") else job.sender
        return job.network, sender

    def pending(self, network: Network, address: str) -> list[PipelineJob]:
        """Jobs submitted by this process that are not yet confirmed."""
        key = (network, address.lower() if address.startswith("0x") else address)
        return [j for j in self._submitted.get(key, []) if j.state == TransactionState.SUBMITTED]

    def _forget(self, job: PipelineJob) -> None:
        key = self._wallet_key(job)
        jobs = [j for j in self._submitted.get(key, []) if j is not job]
        if jobs:
            self._submitted[key] = jobs
        else:
            self._submitted.pop(key, None)

    def _reserved_outpoints(self, job: PipelineJob) -> set[tuple[str, int]]:
        """Outpoints spent by this wallet's other unconfirmed UTXO sends."""
        reserved = set()
        for other in self.pending(job.network, job.sender):
            if other is not job and other.unsigned is not None:
                reserved |= other.unsigned.payload.outpoints
        return reserved

    async def _persist_submitted(self, job: PipelineJob) -> None:
        if self._session_factory is None:
            return
        from hotwallet.ledger.repository import TransactionRepository

        try:
            async with self._session_factory() as session:
                await TransactionRepository(session).record(
                    network=job.network.value,
                    tx_hash=job.tx_hash,
                    sender=job.sender,
                    recipient=job.draft.transfers[0].to if job.draft.transfers else None,
                    asset=job.asset_label,
                    amount=job.amount_label,
                    state=job.state.value,
                    fee=job.quote.estimated_cost if job.quote else None,
                )
        except Exception as e:
            logger.error(f"Failed to record transaction {job.tx_hash}: {e}")

    async def _persist_state(self, job: PipelineJob) -> None:
        if self._session_factory is None or job.tx_hash is None:
            return
        from hotwallet.ledger.repository import TransactionRepository

        try:
            async with self._session_factory() as session:
                await TransactionRepository(session).update_state(
                    network=job.network.value,
                    tx_hash=job.tx_hash,
                    state=job.state.value,
                    block_number=job.receipt.block_number if job.receipt else None,
                    fee=job.receipt.fee_paid if job.receipt else None,
                    error_message=job.error.message if job.error else None,
                )
        except Exception as e:
            logger.error(f"Failed to update transaction {job.tx_hash}: {e}")

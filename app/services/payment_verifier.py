import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable

from app.services.solana_rpc import ChainRpcError, SolanaRpcClient
from app.services.solana_tokens import LAMPORTS_PER_SOL, SolanaToken, get_token
from app.services.transaction_parser import parse_transaction_details

logger = logging.getLogger(__name__)

ACCEPTED_CONFIRMATION_STATUSES = {"confirmed", "finalized"}
REQUIRED_CONFIRMATIONS = 1


class PaymentVerificationError(Exception):
    """Base class for on-chain payment verification failures."""

    retryable = False


class TransactionNotFound(PaymentVerificationError):
    """Signature never showed up in wallet history after all retries."""


class InsufficientConfirmations(PaymentVerificationError):
    """Transaction exists but is not confirmed yet; check again later."""

    retryable = True


class InvalidTransaction(PaymentVerificationError):
    """Transaction failed on chain or does not match the order."""


class AmountMismatch(InvalidTransaction):
    pass


@dataclass(frozen=True)
class VerifiedTransaction:
    signature: str
    from_address: str
    to_address: str
    amount: Decimal
    raw_amount: Decimal
    token: str
    is_spl_token: bool
    confirmations: int
    confirmation_status: str
    block_number: int | None
    block_timestamp: int | None
    fee_lamports: int | None
    mint: str | None = None

    @property
    def fee_sol(self) -> Decimal | None:
        if self.fee_lamports is None:
            return None
        return Decimal(self.fee_lamports) / LAMPORTS_PER_SOL


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    cleaned = str(value).strip()
    return cleaned or None


class PaymentVerifier:
    """Confirms that a signature pays the expected wallet the expected amount.

    RPC nodes index new transactions with a delay, so a missing signature is
    retried ``max_retries`` times with a fixed delay before it is reported as
    ``TransactionNotFound``. Overpayment is accepted; underpayment beyond the
    token's tolerance (a fraction of the expected amount) is rejected.
    """

    def __init__(
        self,
        chain: SolanaRpcClient,
        max_retries: int = 3,
        retry_delay_seconds: float = 2,
        signature_limit: int = 100,
        native_tolerance: Decimal = Decimal("0.01"),
        spl_tolerance: Decimal = Decimal("0.000001"),
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.chain = chain
        self.max_retries = max(1, max_retries)
        self.retry_delay_seconds = retry_delay_seconds
        self.signature_limit = signature_limit
        self.native_tolerance = Decimal(native_tolerance)
        self.spl_tolerance = Decimal(spl_tolerance)
        self._sleep = sleep

    def tolerance_for(self, token: SolanaToken) -> Decimal:
        return self.native_tolerance if token.is_native else self.spl_tolerance

    def _history_entry(self, address: str, signature: str) -> tuple[dict | None, bool]:
        """Return (entry, reachable) for ``signature`` in ``address`` history."""
        try:
            history = self.chain.get_signatures_for_address(address, limit=self.signature_limit)
        except ChainRpcError as exc:
            logger.warning("Failed to fetch transaction history for %s: %s", address, exc)
            return None, False
        for entry in history:
            if entry.get("signature") == signature:
                return entry, True
        return None, True

    def find_signature(self, signature: str, receiver: str, sender: str | None) -> dict[str, Any]:
        reached_rpc = False
        for attempt in range(1, self.max_retries + 1):
            logger.info(
                "Attempt %s/%s: checking for transaction %s in wallet history",
                attempt,
                self.max_retries,
                signature,
            )
            entry, reachable = self._history_entry(receiver, signature)
            reached_rpc = reached_rpc or reachable
            if entry is None and sender:
                entry, reachable = self._history_entry(sender, signature)
                reached_rpc = reached_rpc or reachable
                if entry is not None:
                    logger.info("Found transaction %s in sender's wallet history", signature)

            if entry is not None:
                logger.info("Found transaction %s on attempt %s", signature, attempt)
                return entry

            logger.warning(
                "Transaction %s not found in wallet history (attempt %s/%s)",
                signature,
                attempt,
                self.max_retries,
            )
            if attempt < self.max_retries:
                self._sleep(self.retry_delay_seconds)

        if not reached_rpc:
            raise ChainRpcError(f"Solana RPC unreachable while looking up {signature}")
        raise TransactionNotFound(
            f"Transaction {signature} not found in wallet history after {self.max_retries} attempts"
        )

    def fetch_details(self, signature: str) -> dict[str, Any]:
        last_error: ChainRpcError | None = None
        for attempt in range(1, self.max_retries + 1):
            try:
                result = self.chain.get_transaction(signature)
                last_error = None
            except ChainRpcError as exc:
                last_error = exc
                result = None
            if result is not None:
                return result
            logger.warning(
                "Transaction %s details not available yet (attempt %s/%s)",
                signature,
                attempt,
                self.max_retries,
            )
            if attempt < self.max_retries:
                self._sleep(self.retry_delay_seconds)

        if last_error is not None:
            raise last_error
        raise InsufficientConfirmations(f"Transaction {signature} details are not available yet")

    def verify(
        self,
        signature: str,
        expected_amount: Decimal,
        expected_receiver: str,
        expected_sender: str | None = None,
        token: str = "SOL",
    ) -> VerifiedTransaction:
        signature = _clean(signature)
        receiver = _clean(expected_receiver)
        sender = _clean(expected_sender)
        if not signature:
            raise InvalidTransaction("Transaction signature is required")
        if not receiver:
            raise InvalidTransaction("Expected receiver wallet is required")
        try:
            token_info = get_token(token)
        except ValueError as exc:
            raise InvalidTransaction(str(exc)) from exc
        expected = Decimal(str(expected_amount))

        logger.info(
            "Verifying transaction %s: expected %s %s from %s to %s",
            signature,
            expected,
            token_info.symbol,
            sender or "<any>",
            receiver,
        )

        entry = self.find_signature(signature, receiver, sender)

        confirmation_status = entry.get("confirmationStatus")
        if confirmation_status not in ACCEPTED_CONFIRMATION_STATUSES:
            raise InsufficientConfirmations(
                f"Transaction is {confirmation_status or 'unconfirmed'}, waiting for confirmation"
            )
        if entry.get("err"):
            raise InvalidTransaction(f"Transaction failed on blockchain: {entry.get('err')}")

        result = self.fetch_details(signature)
        parsed = parse_transaction_details(
            result,
            default_token_decimals=token_info.decimals,
            spl=not token_info.is_native,
            receiver=receiver,
        )
        if parsed is None:
            raise InvalidTransaction("Transaction does not contain a supported transfer instruction")
        if parsed.error:
            raise InvalidTransaction(f"Transaction failed on blockchain: {parsed.error}")

        if token_info.is_native and parsed.is_spl_token:
            raise InvalidTransaction("Expected a native SOL transfer but found an SPL token transfer")
        if not token_info.is_native:
            if not parsed.is_spl_token:
                raise InvalidTransaction(f"Expected a {token_info.symbol} token transfer but found a SOL transfer")
            if parsed.mint and parsed.mint != token_info.mint:
                raise InvalidTransaction(
                    f"Transaction token mint {parsed.mint} does not match {token_info.symbol}"
                )

        actual_receiver = _clean(parsed.to_address)
        if actual_receiver != receiver:
            raise InvalidTransaction(
                f"Transaction receiver {actual_receiver} does not match expected {receiver}"
            )
        actual_sender = _clean(parsed.from_address)
        if sender and actual_sender != sender:
            raise InvalidTransaction(
                f"Transaction sender {actual_sender} does not match expected {sender}"
            )

        paid = parsed.amount if parsed.is_spl_token else parsed.amount / LAMPORTS_PER_SOL
        # Tolerances are fractions of the expected amount (0.01 = 1%).
        if paid < expected - expected * self.tolerance_for(token_info):
            raise AmountMismatch(
                f"Transaction amount {paid} {token_info.symbol} is less than expected {expected} {token_info.symbol}"
            )
        logger.info(
            "Amount validation passed: paid %s %s, expected %s %s",
            paid,
            token_info.symbol,
            expected,
            token_info.symbol,
        )

        return VerifiedTransaction(
            signature=signature,
            from_address=actual_sender,
            to_address=actual_receiver,
            amount=paid,
            raw_amount=parsed.amount,
            token=token_info.symbol,
            is_spl_token=parsed.is_spl_token,
            confirmations=REQUIRED_CONFIRMATIONS,
            confirmation_status=confirmation_status,
            block_number=parsed.block_number if parsed.block_number is not None else entry.get("slot"),
            block_timestamp=parsed.block_timestamp if parsed.block_timestamp is not None else entry.get("blockTime"),
            fee_lamports=parsed.fee,
            mint=parsed.mint,
        )


def get_payment_verifier(chain: SolanaRpcClient) -> PaymentVerifier:
    from app.config import settings

    return PaymentVerifier(
        chain=chain,
        max_retries=settings.VERIFY_MAX_RETRIES,
        retry_delay_seconds=settings.VERIFY_RETRY_DELAY_SECONDS,
        signature_limit=settings.VERIFY_SIGNATURE_LIMIT,
        native_tolerance=settings.NATIVE_AMOUNT_TOLERANCE,
        spl_tolerance=settings.SPL_AMOUNT_TOLERANCE,
    )

"""Extract the payment transfer from a ``jsonParsed`` Solana transaction.

Native SOL transfers name wallets directly. SPL token transfers name *token
accounts*: the paying wallet is the instruction ``authority`` and the
receiving wallet has to be resolved from the destination token account via
the transaction's account-key list and ``postTokenBalances``.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

logger = logging.getLogger(__name__)

SPL_TRANSFER_TYPES = {"transfer", "transferChecked"}
SPL_TOKEN_PROGRAMS = {"spl-token", "spl-token-2022"}


@dataclass(frozen=True)
class ParsedTransfer:
    from_address: str | None
    to_address: str | None
    # Lamports for native transfers, UI-scaled token units for SPL transfers.
    amount: Decimal
    is_spl_token: bool
    block_timestamp: int | None
    block_number: int | None
    fee: int | None
    mint: str | None = None
    token_account: str | None = None
    error: Any = None


def _parsed(instruction: dict[str, Any]) -> dict[str, Any]:
    parsed = instruction.get("parsed")
    return parsed if isinstance(parsed, dict) else {}


def _instruction_type(instruction: dict[str, Any]) -> str | None:
    return _parsed(instruction).get("type") or instruction.get("type")


def _instruction_info(instruction: dict[str, Any]) -> dict[str, Any]:
    info = _parsed(instruction).get("info")
    return info if isinstance(info, dict) else {}


def is_native_transfer(instruction: dict[str, Any]) -> bool:
    return instruction.get("program") == "system" and _instruction_type(instruction) == "transfer"


def is_spl_transfer(instruction: dict[str, Any]) -> bool:
    return (
        instruction.get("program") in SPL_TOKEN_PROGRAMS
        and _instruction_type(instruction) in SPL_TRANSFER_TYPES
    )


def _iter_instructions(result: dict[str, Any]):
    message = (result.get("transaction") or {}).get("message") or {}
    for instruction in message.get("instructions") or []:
        if isinstance(instruction, dict):
            yield instruction
    # Payments routed through another program only show up as inner instructions.
    for group in (result.get("meta") or {}).get("innerInstructions") or []:
        for instruction in (group or {}).get("instructions") or []:
            if isinstance(instruction, dict):
                yield instruction


def _transfer_receiver(instruction: dict[str, Any], account_keys: list[str], token_balances: list[dict]) -> str | None:
    info = _instruction_info(instruction)
    if is_native_transfer(instruction):
        return info.get("destination")
    balance = _balance_for_account(info.get("destination"), account_keys, token_balances)
    return (balance or {}).get("owner")


def find_transfer_instruction(
    result: dict[str, Any],
    spl: bool | None = None,
    receiver: str | None = None,
) -> dict[str, Any] | None:
    """Pick the payment among the transaction's transfers.

    Wallets often prepend a system transfer (rent, a tip) to a token payment,
    so with ``spl`` given transfers of that kind are preferred, and among
    those the one paying ``receiver``. Without a better match the first
    transfer is returned.
    """
    transfers = [
        instruction
        for instruction in _iter_instructions(result)
        if is_native_transfer(instruction) or is_spl_transfer(instruction)
    ]
    if not transfers:
        return None

    if spl is not None:
        transfers = [instruction for instruction in transfers if is_spl_transfer(instruction) == spl] or transfers
    if receiver:
        account_keys = account_key_list(result)
        balances = [b for b in ((result.get("meta") or {}).get("postTokenBalances") or []) if isinstance(b, dict)]
        for instruction in transfers:
            if _transfer_receiver(instruction, account_keys, balances) == receiver:
                return instruction
    return transfers[0]


def account_key_list(result: dict[str, Any]) -> list[str]:
    message = (result.get("transaction") or {}).get("message") or {}
    keys = []
    for key in message.get("accountKeys") or []:
        if isinstance(key, dict):
            keys.append(key.get("pubkey"))
        else:
            keys.append(key)
    return keys


def _balance_for_account(token_account: str | None, account_keys: list[str], token_balances: list[dict]) -> dict | None:
    if not token_account:
        return None
    try:
        index = account_keys.index(token_account)
    except ValueError:
        return None
    for balance in token_balances:
        if balance.get("accountIndex") == index:
            return balance
    return None


def resolve_token_account_owner(
    token_account: str | None,
    account_keys: list[str],
    post_token_balances: list[dict[str, Any]] | None,
) -> str | None:
    """Map an SPL token account to the wallet that owns it.

    The token account's position in ``account_keys`` is matched against
    ``accountIndex`` in ``post_token_balances``. Without a match the last
    balance entry's owner is used; without any balances the owner is unknown.
    """
    balances = [b for b in (post_token_balances or []) if isinstance(b, dict)]
    if not balances:
        logger.warning("No postTokenBalances available to resolve owner of %s", token_account)
        return None

    match = _balance_for_account(token_account, account_keys, balances)
    if match is not None:
        return match.get("owner")

    fallback = balances[-1]
    logger.warning(
        "Token account %s not matched in postTokenBalances, falling back to last entry (accountIndex=%s)",
        token_account,
        fallback.get("accountIndex"),
    )
    return fallback.get("owner")


def _to_decimal(value: Any) -> Decimal | None:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def _spl_ui_amount(
    info: dict[str, Any],
    balance: dict[str, Any] | None,
    default_decimals: int,
) -> Decimal:
    token_amount = info.get("tokenAmount")
    if isinstance(token_amount, dict):
        ui_amount = _to_decimal(token_amount.get("uiAmountString"))
        if ui_amount is None:
            ui_amount = _to_decimal(token_amount.get("uiAmount"))
        if ui_amount is not None:
            return ui_amount
        raw = _to_decimal(token_amount.get("amount"))
        decimals = token_amount.get("decimals", default_decimals)
        return (raw or Decimal(0)).scaleb(-int(decimals))

    raw = _to_decimal(info.get("amount")) or Decimal(0)
    decimals = default_decimals
    if balance is not None:
        decimals = (balance.get("uiTokenAmount") or {}).get("decimals", default_decimals)
    return raw.scaleb(-int(decimals))


def parse_transaction_details(
    result: dict[str, Any],
    default_token_decimals: int = 6,
    *,
    spl: bool | None = None,
    receiver: str | None = None,
) -> ParsedTransfer | None:
    """Parse the ``result`` of ``getTransaction``; None when it has no transfer.

    ``spl`` and ``receiver`` steer the choice when several transfers are present.
    """
    meta = result.get("meta") or {}
    instruction = find_transfer_instruction(result, spl=spl, receiver=receiver)
    if instruction is None:
        return None

    info = _instruction_info(instruction)
    common = {
        "block_timestamp": result.get("blockTime"),
        "block_number": result.get("slot"),
        "fee": meta.get("fee"),
        "error": meta.get("err"),
    }

    if is_native_transfer(instruction):
        return ParsedTransfer(
            from_address=info.get("source"),
            to_address=info.get("destination"),
            amount=_to_decimal(info.get("lamports")) or Decimal(0),
            is_spl_token=False,
            **common,
        )

    account_keys = account_key_list(result)
    post_balances = meta.get("postTokenBalances") or []
    destination = info.get("destination")
    destination_balance = _balance_for_account(destination, account_keys, post_balances)
    mint = info.get("mint") or (destination_balance or {}).get("mint")

    return ParsedTransfer(
        from_address=info.get("authority") or info.get("multisigAuthority"),
        to_address=resolve_token_account_owner(destination, account_keys, post_balances),
        amount=_spl_ui_amount(info, destination_balance, default_token_decimals),
        is_spl_token=True,
        mint=mint,
        token_account=destination,
        **common,
    )

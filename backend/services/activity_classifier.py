"""
Balance-delta classification of wallet transactions.

Both observation channels (and post-trade verification) reduce a
transaction to a ``BalanceSnapshot``: the net change of every mint owned by
one address, with native SOL and wrapped SOL folded together and the
network fee added back when that address paid it. ``classify`` then decides
what the address did.
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Optional

from models.trading import BASE_ASSET_MINTS, LAMPORTS_PER_SOL, SOL_MINT

_LAMPORTS = Decimal(LAMPORTS_PER_SOL)


class MalformedTransaction(ValueError):
    """A transaction payload is missing fields classification needs."""


class ActivityKind(str, Enum):
    ACQUISITION = "acquisition"
    DISPOSAL = "disposal"
    TRANSFER_IN = "transfer_in"
    TRANSFER_OUT = "transfer_out"
    NEUTRAL = "neutral"
    FAILED = "failed"


@dataclass
class BalanceSnapshot:
    address: str
    signature: str
    slot: Optional[int] = None
    block_time: Optional[int] = None
    failed: bool = False
    fee_lamports: int = 0
    native_delta: Decimal = Decimal(0)
    token_deltas: dict = field(default_factory=dict)  # mint -> Decimal, wSOL included under SOL_MINT

    def deltas(self) -> dict:
        merged = dict(self.token_deltas)
        merged[SOL_MINT] = merged.get(SOL_MINT, Decimal(0)) + self.native_delta
        return {mint: delta for mint, delta in merged.items() if delta != 0}

    def delta_for(self, mint: str) -> Decimal:
        return self.deltas().get(mint, Decimal(0))


@dataclass
class Classification:
    kind: ActivityKind
    acquired_mint: Optional[str] = None
    acquired_amount: Optional[Decimal] = None
    paid_mint: Optional[str] = None
    paid_amount: Optional[Decimal] = None


def _decimal(value, what: str) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError) as e:
        raise MalformedTransaction(f"bad {what}: {value!r}") from e


def _ui_amount(token_balance: dict) -> Decimal:
    ui = token_balance.get("uiTokenAmount") or {}
    if ui.get("uiAmountString") not in (None, ""):
        return _decimal(ui["uiAmountString"], "uiAmountString")
    if ui.get("amount") is not None and ui.get("decimals") is not None:
        return _decimal(ui["amount"], "amount").scaleb(-int(ui["decimals"]))
    raise MalformedTransaction("token balance without amount")


def _account_keys(transaction: dict, meta: dict) -> list:
    message = (transaction.get("message") or {}) if isinstance(transaction, dict) else {}
    keys = []
    for key in message.get("accountKeys") or []:
        keys.append(key.get("pubkey") if isinstance(key, dict) else key)
    # Non-parsed encodings list lookup-table accounts separately.
    if keys and not isinstance((message.get("accountKeys") or [None])[0], dict):
        loaded = meta.get("loadedAddresses") or {}
        keys.extend(loaded.get("writable") or [])
        keys.extend(loaded.get("readonly") or [])
    return keys


def snapshot_from_rpc_transaction(payload: dict, address: str, signature: Optional[str] = None) -> BalanceSnapshot:
    """Snapshot from a ``getTransaction``/``transactionNotification`` payload ({meta, transaction, slot})."""
    if not isinstance(payload, dict):
        raise MalformedTransaction("transaction payload is not an object")
    meta = payload.get("meta")
    transaction = payload.get("transaction")
    if not isinstance(meta, dict) or not isinstance(transaction, dict):
        raise MalformedTransaction("missing meta or transaction")

    signatures = transaction.get("signatures") or []
    sig = signature or (signatures[0] if signatures else None)
    if not sig:
        raise MalformedTransaction("missing signature")

    keys = _account_keys(transaction, meta)
    pre_balances = meta.get("preBalances") or []
    post_balances = meta.get("postBalances") or []
    fee = int(meta.get("fee") or 0)

    native_delta = Decimal(0)
    for index, key in enumerate(keys):
        if key != address or index >= len(pre_balances) or index >= len(post_balances):
            continue
        lamports = int(post_balances[index]) - int(pre_balances[index])
        if index == 0:
            lamports += fee  # fee payer
        native_delta += Decimal(lamports) / _LAMPORTS

    token_deltas: dict = {}
    for sign, entries in ((-1, meta.get("preTokenBalances") or []), (1, meta.get("postTokenBalances") or [])):
        for entry in entries:
            if entry.get("owner") != address:
                continue
            mint = entry.get("mint")
            if not mint:
                raise MalformedTransaction("token balance without mint")
            token_deltas[mint] = token_deltas.get(mint, Decimal(0)) + sign * _ui_amount(entry)

    return BalanceSnapshot(
        address=address,
        signature=sig,
        slot=payload.get("slot"),
        block_time=payload.get("blockTime"),
        failed=meta.get("err") is not None,
        fee_lamports=fee,
        native_delta=native_delta,
        token_deltas=token_deltas,
    )


def snapshot_from_enhanced_transaction(payload: dict, address: str) -> BalanceSnapshot:
    """Snapshot from an enhanced-transactions API item (``accountData`` form)."""
    if not isinstance(payload, dict):
        raise MalformedTransaction("transaction payload is not an object")
    sig = payload.get("signature")
    account_data = payload.get("accountData")
    if not sig or not isinstance(account_data, list):
        raise MalformedTransaction("missing signature or accountData")

    fee = int(payload.get("fee") or 0)
    native_lamports = 0
    token_deltas: dict = {}
    for entry in account_data:
        if entry.get("account") == address:
            native_lamports += int(entry.get("nativeBalanceChange") or 0)
        for change in entry.get("tokenBalanceChanges") or []:
            if change.get("userAccount") != address:
                continue
            raw = change.get("rawTokenAmount") or {}
            mint = change.get("mint")
            if not mint or raw.get("tokenAmount") is None:
                raise MalformedTransaction("token balance change without mint or amount")
            amount = _decimal(raw["tokenAmount"], "tokenAmount").scaleb(-int(raw.get("decimals") or 0))
            token_deltas[mint] = token_deltas.get(mint, Decimal(0)) + amount
    if payload.get("feePayer") == address:
        native_lamports += fee

    return BalanceSnapshot(
        address=address,
        signature=sig,
        slot=payload.get("slot"),
        block_time=payload.get("timestamp"),
        failed=payload.get("transactionError") is not None,
        fee_lamports=fee,
        native_delta=Decimal(native_lamports) / _LAMPORTS,
        token_deltas=token_deltas,
    )


def classify(snapshot: BalanceSnapshot, min_paid_amount: Decimal = Decimal("0.0001")) -> Classification:
    """Acquisition = a non-base mint went up while a base asset went down by more than dust."""
    if snapshot.failed:
        return Classification(ActivityKind.FAILED)

    deltas = snapshot.deltas()
    gained = {m: d for m, d in deltas.items() if m not in BASE_ASSET_MINTS and d > 0}
    lost = {m: -d for m, d in deltas.items() if m not in BASE_ASSET_MINTS and d < 0}
    base_spent = {m: -d for m, d in deltas.items() if m in BASE_ASSET_MINTS and -d >= min_paid_amount}
    base_received = {m: d for m, d in deltas.items() if m in BASE_ASSET_MINTS and d >= min_paid_amount}

    if gained and base_spent:
        acquired_mint = max(gained, key=gained.get)
        paid_mint = max(base_spent, key=base_spent.get)
        return Classification(
            ActivityKind.ACQUISITION,
            acquired_mint=acquired_mint,
            acquired_amount=gained[acquired_mint],
            paid_mint=paid_mint,
            paid_amount=base_spent[paid_mint],
        )
    if lost and base_received:
        sold_mint = max(lost, key=lost.get)
        received_mint = max(base_received, key=base_received.get)
        return Classification(
            ActivityKind.DISPOSAL,
            acquired_mint=received_mint,
            acquired_amount=base_received[received_mint],
            paid_mint=sold_mint,
            paid_amount=lost[sold_mint],
        )
    if gained:
        return Classification(ActivityKind.TRANSFER_IN)
    if lost:
        return Classification(ActivityKind.TRANSFER_OUT)
    return Classification(ActivityKind.NEUTRAL)

"""Currency conversion and transaction classification."""

import logging
from collections import Counter
from collections.abc import Collection, Iterable

from .errors import ConversionUnavailable
from .models import UAH, CurrencyRate, Transaction
from .periods import day_of

logger = logging.getLogger(__name__)

# Monobank descriptions of moves between the user's own cards
INTERNAL_TRANSFER_KEYWORDS = (
    "з білої картки",
    "на білу картку",
    "власні кошти",
    "між картками",
    "f2f",
)

# Jars, deposits and savings top-ups
SAVINGS_KEYWORDS = (
    "накопичення",
    "депозит",
    "відкриття депозиту",
    "поповнення депозиту",
    "часткове зняття банки",
    "зняття банки",
    "«оренда»",
    "поповнення «оренда»",
)

CASH_WITHDRAWAL_KEYWORDS = ("банкомат", "atm", "cash", "готівка")


# -----------------------------------------------------------------------------
# Currency conversion
# -----------------------------------------------------------------------------

def find_rate(currency_code: int, rates: Iterable[CurrencyRate], target: int = UAH) -> CurrencyRate:
    """Find the rate entry converting currency_code into target.

    Raises:
        ConversionUnavailable: If the rate table has no such pair.
    """
    for rate in rates:
        if rate.currency_code_a == currency_code and rate.currency_code_b == target:
            return rate
    raise ConversionUnavailable(f"No rate for {currency_code} -> {target}")


def convert_to_uah(
    amount: int,
    currency_code: int | None,
    rates: Iterable[CurrencyRate],
) -> int:
    """Convert a minor-unit amount into UAH kopecks.

    The bank's sell rate is used for foreign-to-UAH conversion, falling back
    to the cross rate and then the buy rate. Rates are always the latest
    published ones, also for historical months.

    A missing rate is not an error: the amount is returned unconverted and a
    warning is logged so the result can be treated as approximate.

    Args:
        amount: Signed amount in minor units of currency_code.
        currency_code: ISO 4217 numeric code; None means UAH.
        rates: Rate table from the currency rate source.

    Returns:
        Amount in UAH minor units.
    """
    if not currency_code or currency_code == UAH:
        return amount

    try:
        rate = find_rate(currency_code, rates)
    except ConversionUnavailable:
        logger.warning("No exchange rate for currency %s, amount left unconverted", currency_code)
        return amount

    exchange_rate = rate.rate_sell or rate.rate_cross or rate.rate_buy
    if not exchange_rate:
        logger.warning("Empty exchange rate for currency %s, amount left unconverted", currency_code)
        return amount

    return round(amount * exchange_rate)


# -----------------------------------------------------------------------------
# Classification
# -----------------------------------------------------------------------------

def is_cash_withdrawal(tx: Transaction) -> bool:
    """Check if transaction is an ATM cash withdrawal."""
    description = tx.description.lower()
    return any(keyword in description for keyword in CASH_WITHDRAWAL_KEYWORDS)


def find_paired_ids(transactions: Iterable[Transaction]) -> set[str]:
    """Find transactions offset by an exact opposite amount on the same day.

    Such pairs are transfers between own accounts or refund reversals.
    """
    transactions = list(transactions)
    seen = Counter((day_of(tx.time), tx.amount) for tx in transactions)
    return {
        tx.id
        for tx in transactions
        if tx.amount != 0 and seen[(day_of(tx.time), -tx.amount)] > 0
    }


def _matches_heuristics(tx: Transaction) -> bool:
    description = tx.description.lower()
    if any(keyword in description for keyword in INTERNAL_TRANSFER_KEYWORDS):
        return True
    if any(keyword in description for keyword in SAVINGS_KEYWORDS):
        return True
    return is_cash_withdrawal(tx)


def is_auto_excluded(
    tx: Transaction,
    all_transactions: Iterable[Transaction] | None = None,
    paired_ids: Collection[str] | None = None,
) -> bool:
    """Check if an outgoing transaction is excluded by the heuristics.

    Used to tell whether a transaction can be manually included.
    """
    if tx.amount >= 0:
        return False
    if _matches_heuristics(tx):
        return True
    if paired_ids is None and all_transactions is not None:
        paired_ids = find_paired_ids(all_transactions)
    return bool(paired_ids) and tx.id in paired_ids


def is_internal_transfer(
    tx: Transaction,
    all_transactions: Iterable[Transaction] | None = None,
    included_ids: Collection[str] | None = None,
    paired_ids: Collection[str] | None = None,
) -> bool:
    """Check if transaction moves money between own accounts, savings or cash.

    Manually included transactions are never internal transfers.
    """
    if included_ids and tx.id in included_ids:
        return False
    if _matches_heuristics(tx):
        return True
    if paired_ids is None and all_transactions is not None:
        paired_ids = find_paired_ids(all_transactions)
    return bool(paired_ids) and tx.id in paired_ids


def is_expense(
    tx: Transaction,
    all_transactions: Iterable[Transaction] | None = None,
    included_ids: Collection[str] | None = None,
    excluded_ids: Collection[str] | None = None,
    paired_ids: Collection[str] | None = None,
) -> bool:
    """Check if transaction counts towards spending.

    Excluded ids always lose, even when also listed as included.
    """
    if tx.amount >= 0:
        return False
    if excluded_ids and tx.id in excluded_ids:
        return False
    return not is_internal_transfer(tx, all_transactions, included_ids, paired_ids)


def is_income(
    tx: Transaction,
    all_transactions: Iterable[Transaction] | None = None,
    included_ids: Collection[str] | None = None,
    paired_ids: Collection[str] | None = None,
) -> bool:
    """Check if transaction is real income (not a transfer back from savings)."""
    if tx.amount <= 0:
        return False
    return not is_internal_transfer(tx, all_transactions, included_ids, paired_ids)

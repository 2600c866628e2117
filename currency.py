from decimal import Decimal, ROUND_DOWN

from config import Settings
from errors import UnsupportedCurrency


def to_base_currency(amount: Decimal, currency: str, settings: Settings) -> Decimal:
    """
    convert `amount` of `currency` into the ledger's base currency.

    rates come from settings.currency_rates (base units per 1 unit of currency).
    live pricing is the payout side's job; the engine only needs a fixed table.
    """
    currency = (currency or settings.base_currency).strip().upper()
    amount = Decimal(amount)

    if currency == settings.base_currency:
        return amount

    rate = settings.currency_rates.get(currency)
    if rate is None:
        raise UnsupportedCurrency(currency, settings.base_currency)

    return (amount * rate).quantize(settings.amount_quantum, rounding=ROUND_DOWN)

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Union

CENT = Decimal("0.01")


def parse_amount(value: Union[str, int, float, Decimal]) -> Decimal:
    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, float):
        amount = Decimal(str(value))
    elif isinstance(value, int):
        amount = Decimal(value)
    else:
        clean = value.strip().replace("€", "").replace("$", "").replace(" ", "")
        clean = clean.replace(",", ".")
        if clean.count(".") > 1:
            parts = clean.split(".")
            clean = "".join(parts[:-1]) + "." + parts[-1]
        try:
            amount = Decimal(clean)
        except InvalidOperation as exc:
            raise ValueError("Invalid amount") from exc
    if not amount.is_finite():
        raise ValueError("Invalid amount")
    return amount


def to_cents(amount: Decimal) -> int:
    if amount != amount.quantize(CENT):
        raise ValueError("Amount cannot have more than two decimal places")
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)


def format_amount(cents: int) -> str:
    return f"{from_cents(cents):.2f}"

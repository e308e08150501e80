from decimal import Decimal, DecimalException, ROUND_DOWN


WEI_PER_ETH = 10**18


def parse_ether(value: str) -> int:
    """Convert a decimal ETH string to wei; anything unparseable or out of range is 0."""
    try:
        amount = Decimal(str(value).strip())
        if not amount.is_finite():
            return 0
        return int((amount * WEI_PER_ETH).to_integral_value(rounding=ROUND_DOWN))
    except (DecimalException, ValueError):
        return 0


def format_ether(wei: int) -> str:
    text = format(Decimal(wei) / WEI_PER_ETH, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"

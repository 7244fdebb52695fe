from squares_pool.domain.errors import ValidationError

def format_amount(amount: int, decimals: int, max_decimals: int = 4) -> str:
    """最小单位整数 -> 展示字符串，小数截断（不四舍五入）并去掉尾零"""
    sign = "-" if amount < 0 else ""
    whole, fraction = divmod(abs(amount), 10 ** decimals)
    if not fraction or max_decimals <= 0:
        return f"{sign}{whole}"
    trimmed = str(fraction).rjust(decimals, "0")[:max_decimals].rstrip("0")
    return f"{sign}{whole}.{trimmed}" if trimmed else f"{sign}{whole}"

def parse_amount(text: str, decimals: int) -> int:
    text = text.strip()
    whole, _, fraction = text.partition(".")
    if not whole:
        whole = "0"
    if not whole.isdigit() or (fraction and not fraction.isdigit()):
        raise ValidationError(f"not a decimal amount: {text!r}")
    if len(fraction) > decimals:
        raise ValidationError(f"{text!r} has more than {decimals} decimal places")
    return int(whole + fraction.ljust(decimals, "0")[:decimals])

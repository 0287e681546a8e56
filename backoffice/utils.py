import re
from datetime import date

MONEY_TOLERANCE = 0.01

_UMLAUTS = {"ä": "ae", "ö": "oe", "ü": "ue", "ß": "ss"}


def today():
    return date.today()


def round2(v: float) -> float:
    return round(float(v), 2)


def amounts_match(a: float, b: float) -> bool:
    # Epsilon absorbs float noise at exactly one cent.
    return abs(float(a) - float(b)) <= MONEY_TOLERANCE + 1e-9


def format_money(v) -> str:
    """German currency formatting: 1234.5 -> '1.234,50 €'."""
    if v is None:
        return ""
    s = f"{float(v):,.2f}"  # 1,234.50
    return s.replace(",", "_").replace(".", ",").replace("_", ".") + " €"


def format_date(d: date | None) -> str:
    return d.strftime("%d.%m.%Y") if d else ""


def thousands(n: int | None) -> str:
    return f"{n:,}".replace(",", ".") if n is not None else ""


def slugify(*parts) -> str:
    base = "-".join(str(p) for p in parts if p not in (None, "")).lower()
    base = re.sub(r"[äöüß]", lambda m: _UMLAUTS[m.group(0)], base)
    base = re.sub(r"[^a-z0-9]+", "-", base)
    return base.strip("-")


def split_name(name: str) -> tuple[str | None, str]:
    """'Anna Maria Schmidt' -> ('Anna Maria', 'Schmidt'); a single word is the last name."""
    parts = name.strip().split()
    if not parts:
        return None, ""
    if len(parts) == 1:
        return None, parts[0]
    return " ".join(parts[:-1]), parts[-1]

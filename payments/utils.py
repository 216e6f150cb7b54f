import secrets
import string
import time
from decimal import Decimal, InvalidOperation

ALNUM = string.ascii_lowercase + string.digits


def generate_order_id(prefix="ORD"):
    """Return a local order id such as ``ORD_1718000000000_k3j9x0a2b``.

    Millisecond timestamp plus 9 random base36 chars; independent of the
    database primary key.
    """
    ms = int(time.time() * 1000)
    rand = "".join(secrets.choice(ALNUM) for _ in range(9))
    return f"{prefix}_{ms}_{rand}"


def parse_amount(value) -> Decimal:
    """Lenient amount parse for gateway payloads; anything unusable is 0."""
    try:
        d = Decimal(str(value).strip())
    except (InvalidOperation, TypeError, ValueError):
        return Decimal("0")
    return d if d.is_finite() else Decimal("0")

import random
import string
import time

_BASE36 = string.digits + string.ascii_lowercase


def to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_id(prefix: str = "pg") -> str:
    """Short sortable id: `<prefix>_<base36 ms timestamp>_<4 random chars>`."""
    stamp = to_base36(int(time.time() * 1000))
    suffix = "".join(random.choices(_BASE36, k=4))
    return f"{prefix}_{stamp}_{suffix}"

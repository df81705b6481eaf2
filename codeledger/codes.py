import hashlib
import secrets
import string
import time

ACCESS_CODE_ALPHABET = string.ascii_uppercase + string.digits
ACCESS_CODE_LENGTH = 6
COUPON_CODE_LENGTH = 8


def generate_coupon_code(identity_seed: str, length: int = COUPON_CODE_LENGTH) -> str:
    """Derive a readable coupon code such as ``3F9A-01CD``.

    The seed is hashed together with the current time and random bytes, so
    the code cannot be turned back into the identity. Collisions are left
    to the store's unique index.
    """
    data = f"{identity_seed}{int(time.time() * 1000)}{secrets.token_hex(16)}"
    code = hashlib.sha256(data.encode("utf-8")).hexdigest()[:length].upper()
    if length > 4:
        return "-".join(code[i:i + 4] for i in range(0, len(code), 4))
    return code


def generate_access_code(length: int = ACCESS_CODE_LENGTH) -> str:
    return "".join(secrets.choice(ACCESS_CODE_ALPHABET) for _ in range(length))


def normalize_code(code: str) -> str:
    return code.strip().upper()

import re
import secrets
import string
import time


def generate_order_id(user_id: str, length=6):
    """SUB-<user>-<epoch millis>-<random>; fits the 50 character order id limit of Midtrans."""
    alphabet = string.ascii_uppercase + string.digits
    suffix = ''.join(secrets.choice(alphabet) for _ in range(length))
    user_part = re.sub(r"[^A-Za-z0-9]", "", str(user_id))[:16] or "U"
    return f"SUB-{user_part}-{int(time.time() * 1000)}-{suffix}"

"""
Utility functions for ID generation and timestamps
"""
import random
import string
import time


def generate_subscription_id(taken=(), length: int = 9) -> str:
    """Generate a random subscription ID not present in ``taken``"""
    alphabet = string.ascii_lowercase + string.digits
    while True:
        sub_id = "sub_" + "".join(random.choice(alphabet) for _ in range(length))
        if sub_id not in taken:
            return sub_id


def generate_connection_id(length: int = 8) -> str:
    """Generate a random stream connection ID (hex), used in logs"""
    return "conn_" + "".join(random.choice("abcdef0123456789") for _ in range(length))


def epoch_millis() -> int:
    """Current wall-clock time in milliseconds since the epoch"""
    return int(time.time() * 1000)

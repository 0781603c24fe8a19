import random
import string


def _random_block(length: int = 10) -> str:
    """
    Return a random string of uppercase letters and digits.
    """
    alphabet = string.ascii_uppercase + string.digits
    return "".join(random.SystemRandom().choices(alphabet, k=length))


def generate_id(prefix: str = "ID") -> str:
    """
    Generate a short ID like 'SRC-1F2A9C3D0K' or 'RUN-8K2L0P9Q4M'.
    """
    block = _random_block()
    if prefix:
        return f"{prefix}-{block}"
    return block


# SQLAlchemy column defaults are called with no positional arguments.

def new_source_id() -> str:
    return generate_id("SRC")


def new_run_id() -> str:
    return generate_id("RUN")


def new_event_id() -> str:
    return generate_id("EVT")


def new_transaction_id() -> str:
    return generate_id("TXN")

"""Random alphanumeric strings of fixed length."""

import secrets

ALPHANUMERICALS = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789"
"""The 62 alphanumeric characters, ordered as in the Base 64 alphabet."""


def generate(length: int) -> str:
    """Return a random alphanumeric string of the given length."""
    return "".join(secrets.choice(ALPHANUMERICALS) for _ in range(length))
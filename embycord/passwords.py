"""Password hashing and generation."""

import secrets
import string

import bcrypt

BCRYPT_ROUNDS = 12
DEFAULT_PASSWORD_LENGTH = 12
MIN_GENERATED_LENGTH = 8

LETTERS = string.ascii_letters
DIGITS = string.digits
SYMBOLS = "!@#$%^&*"
ALL_CHARS = LETTERS + DIGITS + SYMBOLS


def hash_password(password: str) -> str:
    """Hash a password with bcrypt."""
    salt = bcrypt.gensalt(rounds=BCRYPT_ROUNDS)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def check_password(password: str, password_hash: str) -> bool:
    """Verify a password against a bcrypt hash."""
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # Malformed hash in storage
        return False


def generate_password(length: int = DEFAULT_PASSWORD_LENGTH) -> str:
    """Generate a random password with at least one letter, digit and symbol.

    Lengths shorter than 8 fall back to the default of 12.
    """
    if length < MIN_GENERATED_LENGTH:
        length = DEFAULT_PASSWORD_LENGTH

    rng = secrets.SystemRandom()
    chars = [
        secrets.choice(LETTERS),
        secrets.choice(DIGITS),
        secrets.choice(SYMBOLS),
    ]
    chars.extend(secrets.choice(ALL_CHARS) for _ in range(length - len(chars)))
    rng.shuffle(chars)
    return "".join(chars)

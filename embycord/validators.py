"""Input validation for usernames, passwords and numeric account settings."""

import re

from embycord.errors import ValidationError

USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_]{3,32}$")

PASSWORD_MIN_LENGTH = 6
PASSWORD_MAX_LENGTH = 64
# bcrypt hashes at most 72 bytes of input
PASSWORD_MAX_BYTES = 72
MIN_DAYS = 1
MAX_DAYS = 3650
MIN_DEVICES = 1
MAX_DEVICES = 100


def sanitize_username(username: str) -> str:
    return username.strip().lower()


def validate_username(username: str) -> None:
    if not username:
        raise ValidationError("username", "username must not be empty")
    if not USERNAME_PATTERN.match(username):
        raise ValidationError(
            "username",
            "use 3-32 characters: letters, digits or underscore",
        )


def validate_password(password: str) -> None:
    if len(password) < PASSWORD_MIN_LENGTH:
        raise ValidationError(
            "password", f"must be at least {PASSWORD_MIN_LENGTH} characters"
        )
    if len(password) > PASSWORD_MAX_LENGTH:
        raise ValidationError(
            "password", f"must be at most {PASSWORD_MAX_LENGTH} characters"
        )
    if len(password.encode("utf-8")) > PASSWORD_MAX_BYTES:
        raise ValidationError(
            "password", "is too long, use fewer accented or special characters"
        )


def validate_days(days: int) -> None:
    if days < MIN_DAYS or days > MAX_DAYS:
        raise ValidationError("days", f"must be between {MIN_DAYS} and {MAX_DAYS}")


def validate_max_devices(max_devices: int) -> None:
    if max_devices < MIN_DEVICES or max_devices > MAX_DEVICES:
        raise ValidationError(
            "max_devices", f"must be between {MIN_DEVICES} and {MAX_DEVICES}"
        )


def parse_int(value: str, field_name: str) -> int:
    """Parse user-typed integers, turning garbage into a ValidationError."""
    try:
        return int(str(value).strip())
    except ValueError:
        raise ValidationError(field_name, "must be a whole number") from None

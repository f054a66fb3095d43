import logging
import secrets
import string
import time
from collections.abc import Callable


logger = logging.getLogger(__name__)

UPPERCASE = string.ascii_uppercase
LOWERCASE = string.ascii_lowercase
DIGITS = string.digits
SPECIAL = "!@#$%^&*()_+-=[]{}|;:,.<>?"
PASSWORD_LENGTH = 16
MIN_PER_CLASS = 2


def generate_password(length: int = PASSWORD_LENGTH) -> str:
    classes = (UPPERCASE, LOWERCASE, DIGITS, SPECIAL)
    if length < MIN_PER_CLASS * len(classes):
        raise ValueError(f"password length must be at least {MIN_PER_CLASS * len(classes)}")

    chars = [secrets.choice(pool) for pool in classes for _ in range(MIN_PER_CLASS)]
    everything = "".join(classes)
    chars.extend(secrets.choice(everything) for _ in range(length - len(chars)))
    secrets.SystemRandom().shuffle(chars)
    return "".join(chars)


def fallback_password(first_name: str, phone_number: str, *, clock: Callable[[], float] = time.time) -> str:
    prefix = first_name[:3].upper()
    return f"{prefix}{phone_number[-4:]}!{int(clock()) % 10000}"


def password_for(first_name: str, phone_number: str) -> str:
    try:
        return generate_password()
    except (OSError, NotImplementedError) as exc:
        # os.urandom unavailable
        logger.error("secure password generation failed, using fallback", extra={"error": str(exc)})
        return fallback_password(first_name, phone_number)

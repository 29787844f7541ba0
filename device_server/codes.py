"""
Device code and user code generation (RFC 8628 §6.1).
device_code: 32 hex chars (128 bits), only ever seen by the polling device.
user_code: 8 chars without ambiguous glyphs (0/O, 1/I/L), shown as XXXX-XXXX.
"""
import re
import secrets

USER_CODE_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"
USER_CODE_LENGTH = 8
DEVICE_CODE_BYTES = 16

_DEVICE_CODE_RE = re.compile(r"^[a-f0-9]{32}$", re.IGNORECASE)
_SEPARATORS_RE = re.compile(r"[\s-]+")


def generate_device_code() -> str:
    return secrets.token_hex(DEVICE_CODE_BYTES)


def generate_user_code() -> str:
    """Random user code in display form, e.g. 'WDJB-MJHT'."""
    code = "".join(secrets.choice(USER_CODE_ALPHABET) for _ in range(USER_CODE_LENGTH))
    return format_user_code(code)


def normalize_user_code(code: str) -> str:
    """Strip hyphens and whitespace, upper-case. Used before every comparison or lookup."""
    return _SEPARATORS_RE.sub("", code or "").upper()


def format_user_code(code: str) -> str:
    normalized = normalize_user_code(code)
    if len(normalized) != USER_CODE_LENGTH:
        return normalized
    half = USER_CODE_LENGTH // 2
    return f"{normalized[:half]}-{normalized[half:]}"


def is_valid_device_code(code: str | None) -> bool:
    return isinstance(code, str) and bool(_DEVICE_CODE_RE.match(code))


def is_valid_user_code(code: str | None) -> bool:
    """Accepts formatted ('WDJB-MJHT') and normalized ('wdjbmjht') input."""
    if not isinstance(code, str):
        return False
    normalized = normalize_user_code(code)
    if len(normalized) != USER_CODE_LENGTH:
        return False
    return all(ch in USER_CODE_ALPHABET for ch in normalized)


def issue_codes() -> tuple[str, str]:
    """Return (device_code, user_code). Independent draws; the two cannot be derived from each other."""
    return generate_device_code(), generate_user_code()

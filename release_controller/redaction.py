import re
from urllib.parse import urlsplit


MAX_ERROR_MESSAGE_LENGTH = 512
GENERIC_ERROR_MESSAGE = "reconcile failed; see controller logs for details"
MASK = "[REDACTED]"

# Header lines whose whole value is a credential.
_HEADER_SECRET = re.compile(
    r"((?:Authorization|Set-Cookie|X-Amz-Security-Token|X-Webhook-Secret)\s*:\s*)[^\n\r]+",
    re.IGNORECASE,
)
_BEARER = re.compile(r"(Bearer\s+)\S+", re.IGNORECASE)
# key=value secrets, including presigned S3 parameters that show up in backend errors.
_ASSIGNED_SECRET = re.compile(
    r"((?:access_token|id_token|refresh_token|token|api_key|cookie"
    r"|X-Amz-Signature|X-Amz-Credential|X-Amz-Security-Token)=)[^&;\s]+",
    re.IGNORECASE,
)
_EMBEDDED_URL = re.compile(r"https?://[^\s]+")

# Phrases that indicate a credential leaked into an error string even after masking.
_SENSITIVE_PATTERNS = [
    re.compile(r"secret[_-]?access[_-]?key", re.IGNORECASE),
    re.compile(r"private[_-]?key", re.IGNORECASE),
    re.compile(r"password\s*[=:]", re.IGNORECASE),
    re.compile(r"AKIA[0-9A-Z]{16}"),
]


def redact_url(value: str) -> str:
    if not value:
        return ""
    try:
        parsed = urlsplit(value)
    except ValueError:
        return "<redacted-url>"
    if not parsed.scheme or not parsed.netloc:
        return "<redacted-url>"
    host = parsed.hostname or ""
    if parsed.port:
        host = f"{host}:{parsed.port}"
    return f"{parsed.scheme}://{host}{parsed.path}"


def redact_text(value: str) -> str:
    """Mask credentials and reduce every embedded URL to scheme, host and path."""
    if not value:
        return value
    for pattern in (_HEADER_SECRET, _BEARER, _ASSIGNED_SECRET):
        value = pattern.sub(lambda match: match.group(1) + MASK, value)
    return _EMBEDDED_URL.sub(lambda match: redact_url(match.group(0)), value)


def sanitize_error_message(message: str) -> str:
    """Make an error string safe to persist in a user-visible status condition."""
    if not message:
        return ""
    if any(pattern.search(message) for pattern in _SENSITIVE_PATTERNS):
        return GENERIC_ERROR_MESSAGE
    redacted = redact_text(message)
    if len(redacted) > MAX_ERROR_MESSAGE_LENGTH:
        return redacted[: MAX_ERROR_MESSAGE_LENGTH - 3] + "..."
    return redacted

from datetime import datetime
from typing import Optional

from itsdangerous import BadSignature, URLSafeSerializer

from config import get_settings
from errors import ValidationError


def _serializer() -> URLSafeSerializer:
    settings = get_settings()
    return URLSafeSerializer(settings.cursor_secret, salt="ledger-cursor")


def encode_cursor(position: tuple[datetime, int], scope: str) -> str:
    """Opaque continuation token for keyset pagination over (date, id)."""
    when, row_id = position
    return _serializer().dumps({"d": when.isoformat(), "i": row_id, "s": scope})


def decode_cursor(token: Optional[str], scope: str) -> Optional[tuple[datetime, int]]:
    if not token:
        return None
    try:
        data = _serializer().loads(token)
    except BadSignature as exc:
        raise ValidationError("Invalid pagination cursor") from exc

    # a token issued for one listing must not be replayed against another
    if data.get("s") != scope:
        raise ValidationError("Invalid pagination cursor")
    try:
        return datetime.fromisoformat(data["d"]), int(data["i"])
    except (KeyError, TypeError, ValueError) as exc:
        raise ValidationError("Invalid pagination cursor") from exc

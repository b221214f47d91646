import re

from flask import request

from kudimarket.errors import ValidationError


def json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def require_fields(data: dict, *names):
    miss = [k for k in names if data.get(k) in (None, "")]
    if miss:
        raise ValidationError("missing fields: " + ", ".join(miss), fields=miss)


def parse_int(v, default=None, minv=None, maxv=None):
    if v is None or v == "":
        return default
    try:
        n = int(v)
    except (TypeError, ValueError):
        return default
    if minv is not None and n < minv:
        return default
    if maxv is not None and n > maxv:
        return default
    return n


def positive_int(v, field: str) -> int:
    if isinstance(v, bool):
        raise ValidationError(f"{field} must be a positive integer", field=field)
    n = parse_int(v, minv=1)
    if n is None or str(v).strip() != str(n):
        raise ValidationError(f"{field} must be a positive integer", field=field)
    return n


def clean_text(v, field: str) -> str | None:
    """Stripped string value, None when blank; anything that is not a string is rejected."""
    if v is None:
        return None
    if not isinstance(v, str):
        raise ValidationError(f"{field} must be a string", field=field)
    return v.strip() or None


def text_field(data: dict, field: str, required: bool = False) -> str | None:
    v = clean_text(data.get(field), field)
    if required and v is None:
        raise ValidationError(f"{field} is required", field=field)
    return v


def normalize_email(s, field: str = "email") -> str | None:
    s = clean_text(s, field)
    return s.lower() if s else None


def slugify(name: str) -> str:
    return re.sub(r"^-+|-+$", "", re.sub(r"[^a-z0-9]+", "-", (name or "").lower()))


def enum_value(enum_cls, v, field: str):
    try:
        return enum_cls(v)
    except ValueError:
        raise ValidationError(f"invalid {field}", field=field, allowed=[e.value for e in enum_cls])

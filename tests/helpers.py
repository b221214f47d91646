import hashlib
import hmac
import json

from kudimarket.config import TestingConfig
from kudimarket.db import db

WEBHOOK_SECRET = TestingConfig.PAYSTACK_SECRET_KEY


def principal(user, role):
    return {"id": user.id, "role": role, "email": user.email}


def sign(payload: dict) -> tuple[bytes, str]:
    raw = json.dumps(payload).encode()
    return raw, hmac.new(WEBHOOK_SECRET.encode(), raw, hashlib.sha512).hexdigest()


def fresh(model, ident):
    db.session.expire_all()
    return db.session.get(model, ident)

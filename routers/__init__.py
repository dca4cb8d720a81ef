from typing import Any, Optional

from database import serialize

PRIVATE_USER_FIELDS = ("passwordHash", "verificationToken", "resetPasswordToken", "resetPasswordExpires")


def ok(data: Any = None, message: Optional[str] = None, **extra) -> dict:
    body = {"status": "success"}
    if message:
        body["message"] = message
    if data is not None:
        body["data"] = serialize(data)
    for key, value in extra.items():
        body[key] = serialize(value)
    return body


def public_user(user: Optional[dict]) -> Optional[dict]:
    if user is None:
        return None
    return {k: v for k, v in serialize(user).items() if k not in PRIVATE_USER_FIELDS}

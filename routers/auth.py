import hashlib
import logging
import secrets
from datetime import timedelta
from typing import Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from pymongo.errors import DuplicateKeyError

from database import as_utc, create_document, utcnow
from deps import Services, get_services
from errors import Conflict, Unauthorized, ValidationError
from routers import ok, public_user
from schemas import Address, User
from security import create_access_token, get_current_user, hash_password, verify_password

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

RESET_TOKEN_TTL = timedelta(hours=1)


def _token_digest(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _issue_token(user: dict, services: Services) -> str:
    return create_access_token({"sub": user["id"], "role": user.get("role")}, services.settings)


def _send(services: Services, to: str, template: str, data: dict) -> None:
    try:
        services.mailer.send(to, template, data)
    except Exception:
        logger.exception("Sending %s email to %s failed", template, to)


class RegisterIn(BaseModel):
    firstName: str = Field(..., min_length=1, max_length=50)
    lastName: str = Field(..., min_length=1, max_length=50)
    email: str
    password: str = Field(..., min_length=6)
    phone: Optional[str] = None
    role: Literal["customer", "farmer"] = "customer"
    address: Optional[Address] = None


class LoginIn(BaseModel):
    email: str
    password: str


class ForgotPasswordIn(BaseModel):
    email: str


class ResetPasswordIn(BaseModel):
    token: str
    password: str = Field(..., min_length=6)


@router.post("/register", status_code=201)
def register(body: RegisterIn, services: Services = Depends(get_services)):
    email = body.email.strip().lower()
    if "@" not in email:
        raise ValidationError("Invalid email address")
    if services.db["user"].find_one({"email": email}):
        raise Conflict("User with this email already exists")

    verification_token = secrets.token_urlsafe(32)
    try:
        user = create_document(services.db, "user", User(
            firstName=body.firstName,
            lastName=body.lastName,
            email=email,
            passwordHash=hash_password(body.password, services.settings.bcrypt_rounds),
            phone=body.phone,
            role=body.role,
            address=body.address,
            verificationToken=verification_token,
        ))
    except DuplicateKeyError:
        raise Conflict("User with this email already exists")

    logger.info("User %s registered as %s", user["id"], user["role"])
    _send(services, email, "verification", {
        "firstName": user["firstName"],
        "verificationUrl": f"{services.settings.frontend_url}/verify-email/{verification_token}",
    })
    return ok({"user": public_user(user), "token": _issue_token(user, services)}, "Registration successful")


@router.post("/login")
def login(body: LoginIn, services: Services = Depends(get_services)):
    user = services.db["user"].find_one({"email": body.email.strip().lower()})
    if not user or not verify_password(body.password, user.get("passwordHash", "")):
        raise Unauthorized("Invalid email or password")
    if not user.get("isActive", True):
        raise Unauthorized("Account is deactivated")

    now = utcnow()
    services.db["user"].update_one({"id": user["id"]}, {"$set": {"lastLogin": now}})
    user["lastLogin"] = now
    farmer = services.db["farmer"].find_one({"userId": user["id"]}) if user["role"] == "farmer" else None
    return ok({"user": public_user(user), "farmer": farmer, "token": _issue_token(user, services)},
              "Login successful")


@router.get("/verify-email/{token}")
def verify_email(token: str, services: Services = Depends(get_services)):
    res = services.db["user"].update_one(
        {"verificationToken": token},
        {"$set": {"isVerified": True, "verificationToken": None, "updatedAt": utcnow()}},
    )
    if not res.modified_count:
        raise ValidationError("Invalid or expired verification token")
    return ok(message="Email verified")


@router.post("/forgot-password")
def forgot_password(body: ForgotPasswordIn, services: Services = Depends(get_services)):
    user = services.db["user"].find_one({"email": body.email.strip().lower(), "isActive": True})
    if user:
        token = secrets.token_urlsafe(32)
        services.db["user"].update_one({"id": user["id"]}, {"$set": {
            "resetPasswordToken": _token_digest(token),
            "resetPasswordExpires": utcnow() + RESET_TOKEN_TTL,
        }})
        _send(services, user["email"], "password_reset", {
            "firstName": user["firstName"],
            "resetUrl": f"{services.settings.frontend_url}/reset-password/{token}",
        })
    return ok(message="If the email is registered, a reset link has been sent")


@router.post("/reset-password")
def reset_password(body: ResetPasswordIn, services: Services = Depends(get_services)):
    user = services.db["user"].find_one({"resetPasswordToken": _token_digest(body.token)})
    expires = as_utc(user.get("resetPasswordExpires")) if user else None
    if not user or expires is None or expires < utcnow():
        raise ValidationError("Invalid or expired reset token")

    services.db["user"].update_one({"id": user["id"]}, {"$set": {
        "passwordHash": hash_password(body.password, services.settings.bcrypt_rounds),
        "resetPasswordToken": None,
        "resetPasswordExpires": None,
        "updatedAt": utcnow(),
    }})
    logger.info("Password reset for user %s", user["id"])
    return ok({"token": _issue_token(user, services)}, "Password has been reset")


@router.get("/me")
def me(user=Depends(get_current_user), services: Services = Depends(get_services)):
    farmer = services.db["farmer"].find_one({"userId": user["id"]}) if user["role"] == "farmer" else None
    return ok({"user": public_user(user), "farmer": farmer})


@router.post("/logout")
def logout(user=Depends(get_current_user)):
    return ok(message="Logged out")

"""
Authentication and access control

Bearer tokens are HS256 JWTs whose subject is the account id. The request's
principal is resolved once, when the token is checked, and handed to the order
engine as one of Anonymous / AccountPrincipal / AdminPrincipal.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Union

import bcrypt
import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pymongo.errors import DuplicateKeyError

import config
from database import create_document, get_db, get_document, get_documents, serialize, update_document
from errors import Conflict, Forbidden, NotFound, Unauthorized
from schemas import AccountUpdate, RegisterRequest, User

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Anonymous:
    pass


@dataclass(frozen=True)
class AccountPrincipal:
    account_id: str
    phone: str
    telegram_id: Optional[str] = None


@dataclass(frozen=True)
class AdminPrincipal(AccountPrincipal):
    pass


Principal = Union[Anonymous, AccountPrincipal]


def is_admin(principal: Principal) -> bool:
    return isinstance(principal, AdminPrincipal)


# Passwords

def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=10)).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # malformed hash in storage
        return False


# Tokens

def create_access_token(account_id: str, expires_days: Optional[int] = None) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(account_id),
        "iat": now,
        "exp": now + timedelta(days=expires_days or config.JWT_EXPIRES_DAYS),
    }
    return jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)


def decode_access_token(token: str) -> str:
    try:
        payload = jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
    except jwt.PyJWTError:
        raise Unauthorized("Invalid token")
    account_id = payload.get("sub")
    if not account_id:
        raise Unauthorized("Invalid token")
    return account_id


# Principals

def principal_for(account: Dict[str, Any]) -> AccountPrincipal:
    cls = AdminPrincipal if account.get("is_admin") else AccountPrincipal
    return cls(
        account_id=str(account["_id"]),
        phone=account["phone"],
        telegram_id=account.get("telegram_id"),
    )


def resolve_principal(db, token: Optional[str]) -> Principal:
    if not token:
        return Anonymous()
    account_id = decode_access_token(token)
    account = get_document(db, "user", account_id)
    if account is None:
        raise Unauthorized("Invalid token")
    return principal_for(account)


def account_out(account: Dict[str, Any]) -> Dict[str, Any]:
    data = serialize(account)
    return {
        "id": data["id"],
        "phone": data["phone"],
        "is_admin": bool(data.get("is_admin")),
        "telegram_id": data.get("telegram_id"),
        "telegram_username": data.get("telegram_username"),
    }


# Account operations

def register_account(db, payload: RegisterRequest, admin: bool = False) -> Dict[str, Any]:
    if get_documents(db, "user", {"phone": payload.phone}, limit=1):
        raise Conflict("An account with this phone already exists")
    user = User(
        phone=payload.phone,
        password=hash_password(payload.password),
        telegram_id=payload.telegram_id,
        telegram_username=payload.telegram_username,
        is_admin=admin,
    )
    try:
        account = create_document(db, "user", user)
    except DuplicateKeyError:
        # lost a race with a concurrent registration of the same phone
        raise Conflict("An account with this phone already exists")
    logger.info("Registered account %s (admin=%s)", account["_id"], admin)
    return account


def authenticate(db, phone: str, password: str) -> Dict[str, Any]:
    found = get_documents(db, "user", {"phone": phone}, limit=1)
    if not found or not verify_password(password, found[0]["password"]):
        raise Unauthorized("Invalid phone or password")
    return found[0]


def get_account(db, principal: AccountPrincipal) -> Dict[str, Any]:
    account = get_document(db, "user", principal.account_id)
    if account is None:
        raise NotFound("User not found")
    return account


def update_account(db, principal: AccountPrincipal, payload: AccountUpdate) -> Dict[str, Any]:
    changes = payload.model_dump(exclude_unset=True)
    if not changes:
        return get_account(db, principal)
    account = update_document(db, "user", principal.account_id, changes)
    if account is None:
        raise NotFound("User not found")
    return account


# FastAPI dependencies

def get_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db=Depends(get_db),
) -> Principal:
    token = credentials.credentials if credentials else None
    return resolve_principal(db, token)


def require_account(principal: Principal = Depends(get_principal)) -> AccountPrincipal:
    if not isinstance(principal, AccountPrincipal):
        raise Unauthorized("Token not provided")
    return principal


def require_admin(principal: AccountPrincipal = Depends(require_account)) -> AdminPrincipal:
    if not isinstance(principal, AdminPrincipal):
        raise Forbidden("Access denied")
    return principal

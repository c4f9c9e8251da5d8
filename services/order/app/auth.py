"""
Order Service — 認証・認可

トークンの発行は認証サービスの責務。ここでは Bearer トークン (JWT) を
検証してユーザー ID を取り出し、ロールは必ず users テーブルから読む。
トークンやクライアントが自己申告するロールは信用しない。
"""

from dataclasses import dataclass

import jwt
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from . import events
from .config import Settings
from .errors import AuthenticationError, AuthorizationError
from .models import Order, User

STAFF_ROLES = frozenset({"staff", "admin"})


@dataclass(frozen=True)
class Principal:
    user_id: str
    email: str
    role: str
    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES

    @classmethod
    def from_user(cls, user: User) -> "Principal":
        return cls(
            user_id=user.id,
            email=user.email,
            role=user.role,
            first_name=user.first_name,
            last_name=user.last_name,
            phone=user.phone,
        )


def decode_token(token: str, settings: Settings) -> str:
    """JWT を検証してユーザー ID (userId または sub) を返す。"""
    try:
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token expired", code="TOKEN_EXPIRED") from None
    except jwt.InvalidTokenError:
        raise AuthenticationError("Invalid token", code="INVALID_TOKEN") from None
    user_id = claims.get("userId") or claims.get("sub")
    if not user_id:
        raise AuthenticationError("Invalid token", code="INVALID_TOKEN")
    return str(user_id)


async def load_principal(session: AsyncSession, user_id: str) -> Principal | None:
    result = await session.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    return Principal.from_user(user) if user else None


async def resolve_principal(session: AsyncSession, token: str | None, settings: Settings) -> Principal:
    if not token:
        raise AuthenticationError("Access token required", code="TOKEN_REQUIRED")
    principal = await load_principal(session, decode_token(token, settings))
    if principal is None:
        raise AuthenticationError("Invalid token", code="INVALID_TOKEN")
    return principal


def require_staff(principal: Principal) -> Principal:
    if not principal.is_staff:
        raise AuthorizationError("Staff access required", code="STAFF_REQUIRED")
    return principal


async def authorize_topic(session: AsyncSession, principal: Principal | None, topic: str) -> bool:
    """
    トピックへの参加可否。参加の瞬間にユーザーを読み直して判定する。

      admin-room / kitchen / inventory-updates : スタッフのみ
      user-{id}                                : 本人 (スタッフは全員分)
      order-{id}                               : 注文の持ち主 (スタッフは全件)
    """
    if principal is None:
        return False
    current = await load_principal(session, principal.user_id)
    if current is None:
        return False
    if topic in (events.ADMIN_ROOM, events.KITCHEN, events.INVENTORY_UPDATES):
        return current.is_staff
    if topic.startswith("user-"):
        return current.is_staff or topic == events.user_topic(current.user_id)
    if topic.startswith("order-"):
        if current.is_staff:
            return True
        order_id = topic[len("order-"):]
        owner = await session.scalar(select(Order.user_id).where(Order.id == order_id))
        return owner is not None and owner == current.user_id
    return False

"""
Order Service — 呼び出し元の識別

認証は BFF (API ゲートウェイ) で集中管理する。
BFF はトークンを検証したうえで、ユーザー ID とロールを
X-User-Id / X-User-Role ヘッダーで下流サービスに渡す。
"""

from dataclasses import dataclass

from fastapi import Depends, Header

from .errors import ForbiddenError, UnauthorizedError
from .schemas import Role


@dataclass(frozen=True)
class CurrentUser:
    id: str
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN


async def get_current_user(
    x_user_id: str | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
) -> CurrentUser:
    if not x_user_id or not x_user_role:
        raise UnauthorizedError("Authentication required")
    try:
        role = Role(x_user_role.upper())
    except ValueError:
        raise UnauthorizedError("Invalid user role") from None
    return CurrentUser(id=x_user_id, role=role)


def require_role(*roles: Role):
    """指定ロール以外を 403 で弾く依存関数を返す。"""

    async def dependency(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if user.role not in roles:
            raise ForbiddenError("Insufficient permissions")
        return user

    return dependency

"""
Order Service — ドメイン例外

コマンド・クエリはビジネスルール違反をこれらの例外で通知する。
HTTP ステータスコードへの変換は main.py の例外ハンドラが行う。
"""

from typing import Any


class AppError(Exception):
    """HTTP ステータスコードとメッセージを持つアプリケーション例外の基底クラス"""

    status_code = 500

    def __init__(self, message: str, details: Any = None, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.details = details
        if status_code is not None:
            self.status_code = status_code


class UnauthorizedError(AppError):
    status_code = 401


class ForbiddenError(AppError):
    status_code = 403


class NotFoundError(AppError):
    status_code = 404


class StockUnavailableError(AppError):
    """在庫不足・販売停止の商品がある。details に商品ごとのメッセージ一覧を持つ。"""

    status_code = 400

    def __init__(self, problems: list[str]):
        super().__init__("Stock unavailable", details=problems)
        self.problems = problems


class InvalidTransitionError(AppError):
    """終端状態 (CANCELLED / DELIVERED) などからの不正なステータス変更"""

    status_code = 400


class ConflictError(AppError):
    status_code = 409

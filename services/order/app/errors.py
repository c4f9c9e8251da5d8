"""
Order Service — エラー定義

ドメイン層はこれらの例外を送出し、HTTP 層 (main.py) の例外ハンドラが
{"code", "error", "correlationId"} 形式のレスポンスに変換する。
"""


class OrderServiceError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, *, code: str | None = None, details: dict | None = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"code": self.code, "error": self.message, **self.details}


class ValidationError(OrderServiceError):
    """必須項目の欠落・不正なステータスなど。部分的な適用は行わない。"""
    status_code = 400
    code = "VALIDATION_ERROR"


class InvalidTransitionError(ValidationError):
    """ステータス遷移がポリシーにより拒否された"""
    status_code = 409
    code = "INVALID_TRANSITION"


class NotFoundError(OrderServiceError):
    status_code = 404
    code = "NOT_FOUND"


class AuthorizationError(OrderServiceError):
    status_code = 403
    code = "ACCESS_DENIED"


class AuthenticationError(AuthorizationError):
    status_code = 401
    code = "INVALID_TOKEN"


class DependencyError(OrderServiceError):
    """永続化層など外部依存の障害。注文操作そのものを失敗させる。"""
    status_code = 503
    code = "DEPENDENCY_UNAVAILABLE"

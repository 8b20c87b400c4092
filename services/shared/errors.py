"""
Shared — エラー分類 (Error Taxonomy)

  ValidationError          入力不正。利用者が直せる (400)
  InsufficientStockError   在庫不足。ビジネスルール違反 (400)
  NotFoundError            対象が存在しない (404)
  PersistenceError         DB 書き込み失敗。状態は何も残らない (500)
  BrokerUnavailableError   ブローカー接続断。Relay / Consumer がバックオフで再試行する (503)
  PricingUnavailableError  価格スナップショットを取得できない (503)
  DuplicateDeliveryError   重複配信。Consumer の重複排除が吸収し、呼び出し元には出ない
"""

from uuid import UUID

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse


class ServiceError(Exception):
    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(ServiceError):
    status_code = 400


class InsufficientStockError(ServiceError):
    status_code = 400

    def __init__(self, product_id: UUID, requested: int, available: int | None = None) -> None:
        super().__init__("Insufficient stock")
        self.product_id = product_id
        self.requested = requested
        self.available = available


class NotFoundError(ServiceError):
    status_code = 404


class PersistenceError(ServiceError):
    status_code = 500


class BrokerUnavailableError(ServiceError):
    status_code = 503


class PricingUnavailableError(ServiceError):
    status_code = 503


class DuplicateDeliveryError(ServiceError):
    pass


def install_error_handlers(app: FastAPI) -> None:
    """ServiceError とリクエスト形式エラーを {"message": ...} の JSON に変換する。"""

    @app.exception_handler(ServiceError)
    async def handle_service_error(_request: Request, exc: ServiceError):
        return JSONResponse(status_code=exc.status_code, content={"message": exc.message})

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(_request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={"message": "Invalid request", "errors": jsonable_encoder(exc.errors())},
        )

"""业务异常：服务层抛出，路由层统一转换为 HTTP 响应。

message 是给用户看的简短提示，技术细节只写日志。
"""


class ServiceError(Exception):
    status_code = 500
    code = 50000

    def __init__(self, message: str = "", code: int = None):
        self.message = message or "服务内部错误"
        if code is not None:
            self.code = code
        super().__init__(self.message)


class NotFoundError(ServiceError):
    status_code = 404
    code = 40400


class ForbiddenError(ServiceError):
    status_code = 403
    code = 40300


class ConflictError(ServiceError):
    status_code = 409
    code = 40900


class AlreadyProcessedError(ConflictError):
    """幂等重放：调用方应视为成功。"""

    code = 40901


class AmountMismatchError(ServiceError):
    status_code = 400
    code = 40002


class ValidationError(ServiceError):
    status_code = 400
    code = 40001


class InternalError(ServiceError):
    status_code = 500
    code = 50001


class BadGatewayError(ServiceError):
    """上游支付网关不可用。"""

    status_code = 502
    code = 50201

"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在后台服务或 UI 层做统一捕获，并转换为通道上的 error 事件。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息，也是写入 error 事件的文本。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 run_id、provider 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class NetworkError(BusinessError):
    """网络层错误，例如连接失败、超时等。"""


class ApiError(BusinessError):
    """后端 API 返回非 2xx/429 错误时抛出。"""


class RateLimitError(BusinessError):
    """后端限流错误，由上层负责重试/退避策略。"""


class ValidationError(BusinessError):
    """参数或配置校验失败。"""


class UnsupportedModelError(BusinessError):
    """会话选择的模型没有任何 Provider 能处理。"""


class ChannelClosedError(BusinessError):
    """向已断开的通道发送消息。"""


def describe_error(error: BaseException) -> str:
    """error 事件中展示给用户的文本：业务异常取 message，其余取 str(e)，都为空时用类名。"""

    if isinstance(error, BusinessError) and error.message:
        return error.message
    return str(error) or type(error).__name__

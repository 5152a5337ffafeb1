"""错误文本的用户化处理。

两类已知的哨兵错误码会被替换为较长的操作指引，其余错误原样展示；
如果看起来是 JSON，就尽量格式化后再展示。
"""

import json
from typing import Callable

UNAUTHORIZED = "UNAUTHORIZED"
CLOUDFLARE = "CLOUDFLARE"

API_KEY_HINT = "Consider creating an api key at https://platform.openai.com/account/api-keys"

Translator = Callable[[str], str]


def _identity(text: str) -> str:
    return text


def translate_error(error: str, translate: Translator = _identity, is_safari: bool = False) -> str:
    """把后端 error 文本转成展示给用户的内容。"""

    t = translate
    if error == UNAUTHORIZED:
        lines = [t(UNAUTHORIZED), t("Please login at https://chatgpt.com first")]
        if is_safari:
            lines.append(t("Then open https://chatgpt.com/api/auth/session"))
        lines.append(t("And refresh this page or type you question again"))
        return "<br>".join(lines) + "<br><br>" + t(API_KEY_HINT)
    if error == CLOUDFLARE:
        open_hint = (
            t("Please open https://chatgpt.com/api/auth/session") if is_safari else t("Please open https://chatgpt.com")
        )
        lines = [
            t("OpenAI Security Check Required"),
            open_hint,
            t("And refresh this page or type you question again"),
        ]
        return "<br>".join(lines) + "<br><br>" + t(API_KEY_HINT)
    return t(pretty_error(error))


def pretty_error(error: str) -> str:
    """以 { 开头的错误尝试按 JSON 缩进输出，失败则原样返回。"""

    if isinstance(error, str) and error.lstrip().startswith("{"):
        try:
            return json.dumps(json.loads(error), indent=2, ensure_ascii=False)
        except ValueError:
            return error
    return error

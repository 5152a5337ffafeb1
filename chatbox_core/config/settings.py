"""配置管理模块。

支持从 .env、config.yaml 以及环境变量加载配置。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Literal, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("CHATBOX_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
        Path(__file__).resolve().parents[1] / "config.yaml",
    ])

    seen: set[Path] = set()
    for path in candidates:
        if not path or path in seen:
            continue
        seen.add(path)
        try:
            if path.exists():
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
                if isinstance(data, dict):
                    return data
                warnings.warn(f"Config file {path} is not a mapping, ignored")
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


class Settings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- 自定义 API（优先级最高） ----
    custom_model_api_url: str = Field(
        default="http://localhost:8000/v1/chat/completions",
        description="自定义 OpenAI 兼容接口完整 URL",
    )
    custom_api_key: Optional[str] = Field(default=None, description="自定义接口密钥")
    custom_model_name: str = Field(default="gpt-4o-mini", description="自定义接口使用的模型名")

    # ---- 基于 API Key 的后端 ----
    openai_api_key: Optional[str] = Field(default=None, description="OpenAI API 密钥")
    openai_base_url: str = Field(default="https://api.openai.com/v1", description="OpenAI API 基础URL")
    moonshot_api_key: Optional[str] = Field(default=None, description="Moonshot/Kimi API 密钥")
    moonshot_base_url: str = Field(default="https://api.moonshot.cn/v1", description="Moonshot API 基础URL")
    deepseek_api_key: Optional[str] = Field(default=None, description="DeepSeek API 密钥")
    deepseek_base_url: str = Field(default="https://api.deepseek.com", description="DeepSeek API 基础URL")
    openrouter_api_key: Optional[str] = Field(default=None, description="OpenRouter API 密钥")
    openrouter_base_url: str = Field(default="https://openrouter.ai/api/v1", description="OpenRouter API 基础URL")
    aiml_api_key: Optional[str] = Field(default=None, description="AIML API 密钥")
    aiml_base_url: str = Field(default="https://api.aimlapi.com/v1", description="AIML API 基础URL")
    chatglm_api_key: Optional[str] = Field(default=None, description="ChatGLM / BigModel API 密钥")
    chatglm_base_url: str = Field(
        default="https://open.bigmodel.cn/api/paas/v4",
        description="ChatGLM API 基础URL",
    )
    ollama_endpoint: str = Field(default="http://127.0.0.1:11434/v1", description="Ollama OpenAI 兼容端点")
    ollama_model_name: str = Field(default="llama3.1", description="Ollama 模型名")
    ollama_api_key: Optional[str] = Field(default=None, description="Ollama 反向代理密钥（可选）")

    # ---- 请求参数 ----
    http_timeout: float = Field(default=30.0, ge=1.0, description="HTTP 超时时间（秒）")
    max_conversation_context_length: int = Field(
        default=9,
        ge=0,
        le=100,
        description="回放给后端的历史记录条数",
    )
    temperature: float = Field(default=1.0, ge=0.0, le=2.0, description="生成温度")
    max_response_token_length: int = Field(default=1000, ge=1, description="单次回答最大 token 数")

    # ---- Fanout ----
    default_fanout_mode: Literal["parallel", "sequential"] = Field(
        default="parallel",
        description="未指定时的 fanout 执行模式",
    )
    merge_separator: str = Field(default="\n\n---\n\n", description="合并多个回答时使用的分隔符")

    # ---- 存储与日志 ----
    storage_root: str = Field(default=".storage", description="存储根目录")
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator(
        "custom_api_key",
        "openai_api_key",
        "moonshot_api_key",
        "deepseek_api_key",
        "openrouter_api_key",
        "aiml_api_key",
        "chatglm_api_key",
    )
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v and len(v) < 10:
            raise ValueError("API key seems too short")
        return v

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            cls._config_source,
            file_secret_settings,
        )


settings = Settings()

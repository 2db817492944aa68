"""配置管理模块。

支持从初始化参数、环境变量、.env 以及 config.yaml 加载配置，优先级依次降低。
config.yaml 的查找顺序：LLM_CORE_CONFIG_FILE 指定的路径、当前目录、项目根目录。

模块不在导入时创建全局实例，由应用调用 load_settings() 显式构造后向下传递。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

CONFIG_FILE_ENV = "LLM_CORE_CONFIG_FILE"


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv(CONFIG_FILE_ENV)
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
    ])

    seen: set = set()
    for path in candidates:
        if path in seen:
            continue
        seen.add(path)
        if not path.exists():
            continue
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
            continue
        if isinstance(data, dict):
            return data
        warnings.warn(f"Config file {path} is not a mapping, ignored")
    return {}


class Settings(BaseSettings):
    """运行时配置（使用 Pydantic）。"""

    # ---- Client 默认值 ----
    default_provider: str = Field(default="openai", description="模型未命中索引时使用的 Provider")
    default_model: str = Field(default="gpt-4o-mini", description="请求未指定模型时使用的模型")
    default_max_tokens: int = Field(default=4096, ge=1, description="请求未指定时的最大输出 token")
    default_temperature: float = Field(default=0.7, ge=0.0, le=2.0, description="请求未指定时的温度")

    # ---- Provider 凭据 ----
    # OpenAI
    openai_api_key: Optional[str] = Field(default=None, description="OpenAI API 密钥")
    openai_base_url: str = Field(default="https://api.openai.com/v1", description="OpenAI API 基础URL")
    openai_organization: str = Field(default="", description="OpenAI 组织 ID")
    # Kimi
    kimi_api_key: Optional[str] = Field(default=None, description="Kimi API 密钥")
    kimi_base_url: str = Field(default="https://api.moonshot.cn/v1", description="Kimi API 基础URL")
    # GLM / BigModel
    glm_api_key: Optional[str] = Field(default=None, description="GLM API 密钥")
    glm_base_url: str = Field(
        default="https://open.bigmodel.cn/api/paas/v4",
        description="GLM API 基础URL",
    )
    # Replicate
    replicate_api_token: Optional[str] = Field(default=None, description="Replicate API Token")
    replicate_base_url: str = Field(default="https://api.replicate.com/v1", description="Replicate API 基础URL")
    replicate_poll_interval: float = Field(default=1.0, gt=0.0, description="Replicate 轮询间隔（秒）")
    replicate_poll_timeout: float = Field(default=300.0, gt=0.0, description="Replicate 轮询总超时（秒）")
    # Google Gemini
    google_api_key: Optional[str] = Field(default=None, description="Gemini API 密钥")
    google_base_url: str = Field(
        default="https://generativelanguage.googleapis.com/v1beta",
        description="Gemini API 基础URL",
    )

    http_timeout: float = Field(default=30.0, ge=1.0, description="HTTP 超时时间（秒）")

    # ---- 重试 ----
    retry_max_attempts: int = Field(default=5, ge=1, le=20, description="最大尝试次数（含首次）")
    retry_base_delay: float = Field(default=2.0, ge=0.0, description="指数退避基数（秒）")
    retry_max_delay: float = Field(default=30.0, ge=0.0, description="单次退避上限（秒）")
    retry_fallback_models: List[str] = Field(default_factory=list, description="配额耗尽时依次切换的模型")

    # ---- 会话 ----
    conversation_max_tokens: int = Field(default=100_000, ge=1, description="会话 token 预算")

    # ---- 日志 ----
    log_level: str = Field(default="INFO", description="日志级别")
    log_dir: str = Field(default="logs", description="日志目录，为空时只输出到 handler")
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

    @field_validator("openai_api_key", "kimi_api_key", "glm_api_key", "replicate_api_token", "google_api_key")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v and len(v) < 10:
            raise ValueError("API key seems too short")
        return v

    @field_validator("retry_fallback_models", mode="before")
    @classmethod
    def split_fallback_models(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [m.strip() for m in v.split(",") if m.strip()]
        return v

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level: {v}")
        return level

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


def load_settings(**overrides: Any) -> Settings:
    """构造一份新的配置对象；关键字参数优先级最高。"""

    return Settings(**overrides)

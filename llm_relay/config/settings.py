"""配置管理模块。

支持从初始化参数、环境变量、.env 以及 config.yaml 加载配置（优先级依次降低）。

凭证缺失不会在启动时报错：各适配器在第一次调用时才检查，
并以 AuthError 的形式暴露，未配置的 vendor 不会阻塞启动。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("LLM_RELAY_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
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

    # ---- 默认选择 ----
    default_vendor: str = Field(default="openai", description="默认使用的 vendor 名称")
    default_model: str = Field(default="", description="默认模型，为空时由调用方指定")

    # ---- OpenAI 及兼容厂商 ----
    openai_api_key: Optional[str] = Field(default=None, description="OpenAI API 密钥")
    openai_base_url: str = Field(default="https://api.openai.com/v1", description="OpenAI API 基础URL")
    openai_organization: Optional[str] = Field(default=None, description="OpenAI organization id")
    deepseek_api_key: Optional[str] = Field(default=None, description="DeepSeek API 密钥")
    deepseek_base_url: str = Field(default="https://api.deepseek.com/v1")
    kimi_api_key: Optional[str] = Field(default=None, description="Kimi API 密钥")
    kimi_base_url: str = Field(default="https://api.moonshot.cn/v1", description="Kimi API 基础URL")
    glm_api_key: Optional[str] = Field(default=None, description="GLM API 密钥")
    glm_base_url: str = Field(default="https://open.bigmodel.cn/api/paas/v4", description="GLM API 基础URL")
    groq_api_key: Optional[str] = Field(default=None, description="Groq API 密钥")
    groq_base_url: str = Field(default="https://api.groq.com/openai/v1")
    openrouter_api_key: Optional[str] = Field(default=None, description="OpenRouter API 密钥")
    openrouter_base_url: str = Field(default="https://openrouter.ai/api/v1")

    # ---- Anthropic ----
    anthropic_api_key: Optional[str] = Field(default=None, description="Anthropic API 密钥")
    anthropic_base_url: str = Field(default="https://api.anthropic.com")
    anthropic_version: str = Field(default="2023-06-01", description="anthropic-version 请求头")
    anthropic_max_tokens: int = Field(default=4096, ge=1, description="Messages API 必填的 max_tokens 默认值")

    # ---- Ollama ----
    ollama_base_url: str = Field(default="http://localhost:11434", description="Ollama 服务地址")

    # ---- HTTP / 重试 ----
    http_timeout: float = Field(default=60.0, ge=1.0, description="HTTP 连接/读取超时（秒）")
    call_deadline: float = Field(default=300.0, gt=0.0, description="单次非流式调用的总时限（秒），超时按 VendorFault 处理")
    dispatch_workers: int = Field(default=32, ge=1, description="非流式调用的工作线程数")
    retry_max_attempts: int = Field(default=3, ge=1, le=10, description="限流时的最大尝试次数（含首次）")
    retry_default_backoff: float = Field(default=1.0, ge=0.0, description="厂商未给出 Retry-After 时的退避秒数")
    retry_max_backoff: float = Field(default=30.0, ge=0.0, description="单次退避的上限（秒）")
    retry_fault_backoff: float = Field(default=0.5, ge=0.0, description="VendorFault 重试前的固定等待（秒）")

    # ---- 流式 ----
    stream_buffer_size: int = Field(default=64, ge=1, description="流式多路器内部缓冲的增量个数")
    stream_poll_interval: float = Field(default=0.05, gt=0.0, description="取消信号的检查间隔（秒）")
    stream_idle_timeout: Optional[float] = Field(default=None, description="两个增量之间允许的最长间隔（秒）")
    models_cache_ttl: float = Field(default=300.0, ge=0.0, description="模型列表缓存时间（秒）")

    # ---- 日志 ----
    log_dir: str = Field(default="logs", description="日志目录")
    log_level: str = Field(default="INFO", description="日志级别")
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
        "openai_api_key",
        "deepseek_api_key",
        "kimi_api_key",
        "glm_api_key",
        "groq_api_key",
        "openrouter_api_key",
        "anthropic_api_key",
    )
    @classmethod
    def normalize_api_key(cls, v: Optional[str]) -> Optional[str]:
        # 空字符串视为未配置
        if v is None:
            return None
        v = v.strip()
        return v or None

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
